"""
Script console runner — execute Groovy admin scripts over HTTP.

Scripts are POSTed to ``<url>/scriptText`` (form field ``script``).
The script console answers 200 even when the script throws, so each
script is suffixed with a sentinel ``println``; a missing sentinel
in the output means the script did not run to completion.

Authentication:
    - username + API token → HTTP basic auth (no crumb needed)
    - anonymous            → CSRF crumb from ``/crumbIssuer/api/json``,
                             kept in a per-runner cookie jar
"""

from __future__ import annotations

import base64
import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from http.cookiejar import CookieJar
from typing import Any, Callable

from converge.adapters.base import ScriptResult, ScriptRunner

logger = logging.getLogger(__name__)

SENTINEL = "__converge_script_ok__"

_MAX_ERROR_OUTPUT = 2000


def _wait_for(
    check: Callable[[], bool],
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``check`` until it returns True or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while True:
        if check():
            return True
        if time.monotonic() >= deadline:
            return False
        sleep(interval)


class JenkinsScriptRunner(ScriptRunner):
    """Runs scripts through the Jenkins script console.

    Args:
        url: Base URL of the server (e.g. ``http://localhost:8080``).
        username: User for basic auth (with ``token``).
        token: API token. Without it requests are anonymous.
        timeout: Seconds per script request.
        restart_timeout: Seconds to wait for the server after a restart.
        opener: Object with ``open(request, timeout=...)``; defaults to
            a urllib opener with a cookie jar.
    """

    def __init__(
        self,
        url: str,
        username: str | None = None,
        token: str | None = None,
        timeout: float = 120,
        restart_timeout: float = 300,
        poll_interval: float = 5,
        opener: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._url = url.rstrip("/")
        self._username = username
        self._token = token
        self._timeout = timeout
        self._restart_timeout = restart_timeout
        self._poll_interval = poll_interval
        self._opener = opener or urllib.request.build_opener(
            urllib.request.HTTPCookieProcessor(CookieJar())
        )
        self._sleep = sleep
        self._crumb: tuple[str, str] | None = None

    @property
    def url(self) -> str:
        return self._url

    def __repr__(self) -> str:
        auth = "token" if self._token else "anonymous"
        return f"<JenkinsScriptRunner url={self._url!r} auth={auth}>"

    # ── HTTP plumbing ───────────────────────────────────────────

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": "converge/1.0"}
        if self._username and self._token:
            raw = f"{self._username}:{self._token}".encode("utf-8")
            headers["Authorization"] = "Basic " + base64.b64encode(raw).decode("ascii")
        return headers

    def _request(
        self,
        path: str,
        data: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> tuple[int, str]:
        headers = self._headers()
        body = None
        if data is not None:
            body = urllib.parse.urlencode(data).encode("utf-8")
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            crumb = self._get_crumb()
            if crumb is not None:
                headers[crumb[0]] = crumb[1]

        req = urllib.request.Request(
            f"{self._url}{path}",
            data=body,
            headers=headers,
            method="POST" if data is not None else "GET",
        )
        with self._opener.open(req, timeout=timeout or self._timeout) as resp:
            return resp.getcode(), resp.read().decode("utf-8", errors="replace")

    def _get_crumb(self) -> tuple[str, str] | None:
        """Fetch (and cache) the CSRF crumb for anonymous sessions."""
        if self._token or self._crumb is not None:
            return self._crumb
        try:
            _, text = self._request("/crumbIssuer/api/json")
        except urllib.error.HTTPError as e:
            if e.code == 404:
                logger.debug("No crumb issuer (CSRF protection disabled)")
                return None
            raise
        data = json.loads(text)
        try:
            self._crumb = (data["crumbRequestField"], data["crumb"])
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed crumb response: {text[:200]}") from e
        return self._crumb

    # ── ScriptRunner ────────────────────────────────────────────

    def execute(self, script: str) -> ScriptResult:
        payload = f"{script.rstrip()}\nprintln '{SENTINEL}'\n"
        logger.debug("POST %s/scriptText (%d bytes)", self._url, len(payload))

        try:
            status, text = self._request("/scriptText", data={"script": payload})
        except urllib.error.HTTPError as e:
            return ScriptResult(success=False, error=f"HTTP {e.code} from script console: {e.reason}")
        except (urllib.error.URLError, OSError, ValueError) as e:
            return ScriptResult(success=False, error=f"Script console unreachable: {e}")

        lines = text.rstrip().splitlines()
        if not lines or lines[-1].strip() != SENTINEL:
            return ScriptResult(
                success=False,
                output=text,
                error=f"Script did not complete:\n{text[-_MAX_ERROR_OUTPUT:]}",
            )

        output = "\n".join(lines[:-1])
        logger.debug("Script output (HTTP %d): %s", status, output)
        return ScriptResult(success=True, output=output)

    def is_ready(self) -> bool:
        """Whether the server answers with a non-error page."""
        try:
            status, _ = self._request("/login", timeout=10)
            return status < 400
        except (urllib.error.URLError, OSError, ValueError):
            return False

    def restart(self) -> ScriptResult:
        logger.info("Requesting safe restart of %s", self._url)
        try:
            self._request("/safeRestart", data={})
        except urllib.error.HTTPError as e:
            # 503 = already going down
            if e.code != 503:
                return ScriptResult(success=False, error=f"HTTP {e.code} on safeRestart: {e.reason}")
        except (urllib.error.URLError, OSError) as e:
            # the server may drop the connection while going down
            logger.debug("Connection closed during safeRestart: %s", e)

        # the crumb is bound to the old session
        self._crumb = None
        self._sleep(self._poll_interval)

        if not _wait_for(self.is_ready, self._restart_timeout, self._poll_interval, self._sleep):
            return ScriptResult(
                success=False,
                error=f"Server not ready {self._restart_timeout:.0f}s after restart",
            )
        return ScriptResult(success=True, output="restarted")
