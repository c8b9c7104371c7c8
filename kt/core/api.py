"""Client for the rental service that owns stations, rate tiers and time logs."""

import base64

import requests

from kt.common.logger import log
from kt.core.errors import ApiError
from kt.core.models import RateTier, Station, User

DEFAULT_TIMEOUT = 5.0


class RentalApi:
    """Thin wrapper over the service's JSON endpoints.

    Every network or HTTP failure surfaces as an ApiError, so callers
    only have one thing to catch. The board calls it from worker threads
    (kt.ui.workers), never from the thread that runs the timers.
    """

    def __init__(self, base_url, session=None, timeout=DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self._user = None

    def _request(self, method, path, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise ApiError(f"{method} {url} failed: {exc}") from exc
        return resp

    def _json(self, resp, what):
        try:
            return resp.json()
        except ValueError as exc:
            raise ApiError(f"Invalid JSON in {what} response", resp.status_code) from exc

    def list_stations(self):
        resp = self._request("GET", "/api/stations")
        if not resp.ok:
            raise ApiError(f"Listing stations failed with HTTP {resp.status_code}", resp.status_code)
        payload = self._json(resp, "stations")
        if not isinstance(payload, list):
            raise ApiError("Stations response is not a list")
        stations = []
        for item in payload:
            if isinstance(item, dict) and item.get("active", True) is False:
                continue
            try:
                stations.append(Station.from_dict(item))
            except (ValueError, TypeError, AttributeError):
                log.warning(f"Skipping malformed station entry {item!r}")
        log.debug(f"Fetched {len(stations)} stations")
        return stations

    def list_rate_tiers(self):
        """Rate tiers sorted by minutes, one per duration."""
        resp = self._request("GET", "/api/time/rates")
        if not resp.ok:
            raise ApiError(f"Listing rate tiers failed with HTTP {resp.status_code}", resp.status_code)
        payload = self._json(resp, "rates")
        if not isinstance(payload, list):
            raise ApiError("Rates response is not a list")
        by_minutes = {}
        for item in payload:
            try:
                tier = RateTier.from_dict(item)
            except (KeyError, ValueError, TypeError):
                log.warning(f"Skipping malformed rate tier {item!r}")
                continue
            if tier.minutes <= 0:
                continue
            by_minutes.setdefault(tier.minutes, tier)
        return [by_minutes[m] for m in sorted(by_minutes)]

    def submit_session_log(self, record):
        """Post one finished-session record.

        The record carries a `clientId`; the service keeps that unique, so a
        409 means this exact session was already booked and counts as an ack.
        """
        resp = self._request("POST", "/api/time/logs", json=record)
        if resp.status_code == 409:
            log.info(f"Session log {record.get('clientId')} was already recorded")
            return True
        if not resp.ok:
            raise ApiError(f"Submitting session log failed with HTTP {resp.status_code}", resp.status_code)
        return True

    def login(self, username, password):
        resp = self._request("POST", "/api/login", json={"username": username, "password": password})
        data = self._json(resp, "login") if resp.content else {}
        if not resp.ok or not data.get("ok"):
            raise ApiError(f"Login failed: {data.get('error', resp.status_code)}", resp.status_code)
        self._user = User(username=data.get("username", username), role=data.get("role") or "employee")
        log.info(f"Logged in as '{self._user.username}' ({self._user.role})")
        return self._user

    def current_user(self, fallback=None):
        return self._user or fallback

    def fetch_image(self, ref):
        """Raw bytes of a station image.

        `ref` is whatever the station carries: a data URL from the admin
        cropper, a root-relative path on the service, or an absolute URL.
        """
        if ref.startswith("data:"):
            header, _, payload = ref.partition(",")
            try:
                return base64.b64decode(payload) if header.endswith(";base64") else payload.encode("utf-8")
            except ValueError as exc:
                raise ApiError(f"Malformed image data URL: {exc}") from exc
        url = ref if ref.startswith(("http://", "https://")) else f"{self.base_url}/{ref.lstrip('/')}"
        try:
            resp = self.session.request("GET", url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ApiError(f"GET {url} failed: {exc}") from exc
        if not resp.ok:
            raise ApiError(f"Fetching image failed with HTTP {resp.status_code}", resp.status_code)
        return resp.content
