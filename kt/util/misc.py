from datetime import datetime



# Simply returns the current local time as an ISO8601 string with timezone offset.
def now_iso():
    return datetime.now().astimezone().isoformat()

# Converts an epoch-milliseconds timestamp into a local ISO8601 string, or None when there isn't one.
def iso_from_ms(ms):
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000).astimezone().isoformat()

# Format seconds as HH:MM:SS. Negative values clamp to zero.
def format_time(seconds):
    seconds = max(0, int(seconds))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"

# Amounts are shown without decimals when they're whole, like "C$ 50" rather than "C$ 50.00".
def format_amount(amount, currency="C$"):
    amount = amount or 0
    if float(amount).is_integer():
        return f"{currency} {int(amount)}"
    return f"{currency} {amount:.2f}"
