from kt.util.misc import now_iso, iso_from_ms, format_time, format_amount

__all__ = ["now_iso", "iso_from_ms", "format_time", "format_amount"]
