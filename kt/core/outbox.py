from kt.common.logger import log
from kt.core.errors import ApiError
from kt.util import iso_from_ms

# Builds the log record the rental service expects for a closed session. The session id doubles as the clientId so
# retried submissions can't book the same ride twice.
def build_log_record(station, session, username=None, comment=None):
    record = {
        "clientId": session.id,
        "stationId": station.id,
        "stationNumber": station.number,
        "stationName": station.name,
        "username": username,
        "start": iso_from_ms(session.start),
        "end": iso_from_ms(session.end),
        "duration": session.duration,
        "amount": session.amount,
    }
    if comment:
        record["comment"] = comment
    return record


# Queue of finished session records waiting to be acknowledged by the rental service. Lives inside the persisted
# state (state["outbox"]), so nothing queued is lost across restarts.
class LogOutbox:

    def __init__(self, records=None):
        self.records = records if records is not None else []

    def __len__(self):
        return len(self.records)

    def enqueue(self, record):
        if any(r.get("clientId") == record.get("clientId") for r in self.records):
            log.debug(f"Session log {record.get('clientId')} already queued")
            return False
        self.records.append(record)
        log.info(f"Queued session log {record.get('clientId')} for station '{record.get('stationId')}'")
        return True

    # Copies of the queued records, safe to hand to a background sender while the queue keeps changing.
    def pending(self):
        return [dict(r) for r in self.records]

    # Drops the records whose clientId was acknowledged. Anything queued since the batch was taken stays put.
    def acknowledge(self, client_ids):
        acked = set(client_ids)
        if not acked:
            return 0
        before = len(self.records)
        self.records[:] = [r for r in self.records if r.get("clientId") not in acked]
        return before - len(self.records)

    # Submits and acknowledges in one go, on the calling thread. The board uses send_batch() from a worker instead.
    def flush(self, api):
        return self.acknowledge(send_batch(api, self.pending()))


# Submits `records` in order and returns the clientIds the service acknowledged. Stops at the first ApiError, since
# the service is most likely unreachable, and leaves the rest for the next attempt. Touches nothing but the API, so
# it can run off the GUI thread.
def send_batch(api, records):
    acked = []
    for record in records:
        try:
            api.submit_session_log(record)
        except ApiError as exc:
            log.warning(f"Could not submit session log {record.get('clientId')}, {len(records) - len(acked)} left queued: {exc}")
            break
        acked.append(record.get("clientId"))
    if acked:
        log.info(f"Submitted {len(acked)} session logs")
    return acked
