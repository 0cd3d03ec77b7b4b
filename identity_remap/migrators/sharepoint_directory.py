"""
Directory collaborator backed by the SharePoint site REST API.

This module implements the lookups the validation service and the live
extractor need: find a user in the destination site, ensure a tenant user
on the site, and list site users, groups, group members and list item
values.  A simple rate limiter keeps the request rate under the configured
budget and a generic retry wrapper handles throttling (429) and transient
5xx responses.

Usage example::

    cfg = {"site_url": "https://contoso.sharepoint.com/sites/hr",
           "access_token": "..."}
    directory = SharePointDirectory(cfg)
    result = directory.find_user("jane@contoso.com")

Acquiring ``access_token`` is outside the scope of this package; it is read
from the configuration.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple
from urllib.parse import quote

import requests

from identity_remap.models.identity import DirectoryUser, Found, LookupResult, NotFound
from identity_remap.utils.errors import DirectoryError

CLAIMS_PREFIX = "i:0#.f|membership|"


class DirectoryCollaborator(Protocol):
    """What the core needs from a destination directory."""

    def find_user(self, identity: str) -> LookupResult: ...

    def ensure_user(self, identity: str) -> DirectoryUser: ...

    def list_users(self) -> List[DirectoryUser]: ...

    def list_group_members(self, group_name: str) -> List[DirectoryUser]: ...


###############################################################################
# Rate limiting and retry utilities
###############################################################################

class RateLimiter:
    """
    Simple time-based rate limiter.  Ensures that no more than ``rpm``
    requests are dispatched per minute.
    """

    def __init__(self, rpm: int = 300) -> None:
        self.rpm = max(1, rpm)
        self.interval = 60.0 / float(self.rpm)
        self._last = 0.0

    def wait(self, time_fn: Callable[[], float] = time.time, sleep_fn: Callable[[float], None] = time.sleep) -> None:
        now = time_fn()
        dt = now - self._last
        if dt < self.interval:
            sleep_fn(self.interval - dt)
        self._last = time_fn()


def with_retries(fn: Callable[[], requests.Response], *, max_attempts: int = 5, base_delay: float = 0.7,
                 sleep_fn: Callable[[float], None] = time.sleep) -> requests.Response:
    """
    Execute a function returning a ``requests.Response``, retrying on
    transient HTTP errors.  Retries are attempted on status codes 429
    (too many requests) and 5xx server errors, honouring ``Retry-After``
    when the server sends it and backing off exponentially otherwise.

    :param fn: A zero-argument callable that performs the HTTP request.
    :param max_attempts: Maximum number of attempts before giving up.
    :param base_delay: Base delay in seconds for exponential backoff.
    :return: The successful ``requests.Response``.
    :raises requests.HTTPError: if all attempts fail or the status is not retryable.
    """
    attempt = 0
    while True:
        try:
            resp = fn()
            resp.raise_for_status()
            return resp
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else 0
            if status not in (429, 500, 502, 503, 504) or attempt >= max_attempts - 1:
                raise
            retry_after = e.response.headers.get("Retry-After")
            wait = float(retry_after) if retry_after else base_delay * (2 ** attempt)
            sleep_fn(wait)
            attempt += 1
        except requests.RequestException:
            if attempt >= max_attempts - 1:
                raise
            sleep_fn(base_delay * (2 ** attempt))
            attempt += 1


def _error_message(resp: Optional[requests.Response]) -> str:
    if resp is None:
        return "no response"
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    err = body.get("odata.error") or body.get("error") or {}
    message = err.get("message")
    if isinstance(message, dict):
        message = message.get("value")
    return message or resp.text or f"HTTP {resp.status_code}"


def _odata_literal(value: str) -> str:
    return quote(value.replace("'", "''"), safe="@.")


###############################################################################
# SharePoint directory
###############################################################################

class SharePointDirectory:
    def __init__(self, cfg: Dict[str, Any], *, session: Optional[requests.Session] = None,
                 sleep_fn: Callable[[float], None] = time.sleep) -> None:
        site_url = (cfg.get("site_url") or "").rstrip("/")
        if not site_url:
            raise DirectoryError("Destination site URL ('directory.site_url') is not configured.")
        self.site_url = site_url
        self.access_token = cfg.get("access_token", "")
        self.timeout = float(cfg.get("timeout", 30))
        self.session = session or requests.Session()
        self._sleep = sleep_fn
        self._limiter = RateLimiter(int(cfg.get("requests_per_minute", 300)))

    def _headers(self, json_body: bool = False) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json;odata=nometadata",
        }
        if json_body:
            headers["Content-Type"] = "application/json;odata=nometadata"
        return headers

    def _get(self, path: str) -> requests.Response:
        url = path if path.startswith("http") else f"{self.site_url}/_api/{path}"
        self._limiter.wait(sleep_fn=self._sleep)

        def do_request() -> requests.Response:
            return self.session.get(url, headers=self._headers(), timeout=self.timeout)

        return with_retries(do_request, sleep_fn=self._sleep)

    def _get_values(self, path: str) -> List[Dict[str, Any]]:
        try:
            return self._get(path).json().get("value", [])
        except requests.HTTPError as e:
            raise DirectoryError(_error_message(e.response)) from e
        except requests.RequestException as e:
            raise DirectoryError(f"Network error talking to {self.site_url}: {e}") from e

    def find_user(self, identity: str) -> LookupResult:
        try:
            resp = self._get(f"web/siteusers/getbyemail('{_odata_literal(identity)}')")
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return NotFound(identity, "not found in destination site")
            raise DirectoryError(_error_message(e.response)) from e
        except requests.RequestException as e:
            raise DirectoryError(f"Network error talking to {self.site_url}: {e}") from e
        return Found(DirectoryUser.model_validate(resp.json()))

    def ensure_user(self, identity: str) -> DirectoryUser:
        url = f"{self.site_url}/_api/web/ensureuser"
        logon = identity if "|" in identity else f"{CLAIMS_PREFIX}{identity}"
        self._limiter.wait(sleep_fn=self._sleep)

        def do_request() -> requests.Response:
            return self.session.post(url, headers=self._headers(json_body=True), json={"logonName": logon},
                                     timeout=self.timeout)

        try:
            resp = with_retries(do_request, sleep_fn=self._sleep)
        except requests.HTTPError as e:
            raise DirectoryError(_error_message(e.response)) from e
        except requests.RequestException as e:
            raise DirectoryError(f"Network error talking to {self.site_url}: {e}") from e
        return DirectoryUser.model_validate(resp.json())

    def list_users(self) -> List[DirectoryUser]:
        return [DirectoryUser.model_validate(u) for u in self._get_values("web/siteusers")]

    def list_groups(self) -> List[str]:
        return [g.get("Title", "") for g in self._get_values("web/sitegroups") if g.get("Title")]

    def list_group_members(self, group_name: str) -> List[DirectoryUser]:
        path = f"web/sitegroups/getbyname('{_odata_literal(group_name)}')/users"
        return [DirectoryUser.model_validate(u) for u in self._get_values(path)]

    def iter_item_values(self, list_title: str) -> Iterator[Tuple[str, str, str]]:
        """Yield ``(list title, field, text value)`` for every item of a list, following paging."""
        path: Optional[str] = (
            f"web/lists/getbytitle('{_odata_literal(list_title)}')/items"
            "?$select=*,FieldValuesAsText&$expand=FieldValuesAsText"
        )
        while path:
            try:
                body = self._get(path).json()
            except requests.HTTPError as e:
                raise DirectoryError(_error_message(e.response)) from e
            except requests.RequestException as e:
                raise DirectoryError(f"Network error talking to {self.site_url}: {e}") from e
            for item in body.get("value", []):
                for field, value in (item.get("FieldValuesAsText") or {}).items():
                    if isinstance(value, str) and value:
                        yield list_title, field, value
            path = body.get("odata.nextLink") or body.get("@odata.nextLink")
