"""Agent-service credentials and proactive refresh with poll back-off."""

from __future__ import annotations

import enum
import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import requests

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_FILE = Path.home() / ".claude" / ".credentials.json"
DEFAULT_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
DEFAULT_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
ENV_ACCESS_TOKEN = "CLAUDE_ACCESS_TOKEN"

REFRESH_MARGIN_SECONDS = 300
MAX_BACKOFF_MULTIPLIER = 16


class CredentialSource(str, enum.Enum):
    INTERACTIVE = "interactive"
    ENVIRONMENT = "environment"
    CLI = "cli"


class CredentialError(Exception):
    """Raised when a credential cannot be refreshed.

    ``recoverable`` is False when retrying cannot help (static credential,
    revoked refresh token).
    """

    def __init__(self, message: str, recoverable: bool = True) -> None:
        super().__init__(message)
        self.recoverable = recoverable


@dataclass
class Credential:
    access_token: str
    source: CredentialSource
    refresh_token: str | None = None
    expires_at: float | None = None  # epoch seconds

    @property
    def is_static(self) -> bool:
        return self.source is not CredentialSource.INTERACTIVE or not self.refresh_token

    def expires_within(self, seconds: float, now: float) -> bool:
        return self.expires_at is not None and self.expires_at - now <= seconds


def load_credential(
    access_token: str | None = None,
    credentials_file: str | Path | None = None,
) -> Credential | None:
    """Resolve a credential: CLI flag, then environment, then credentials file."""
    if access_token:
        return Credential(access_token=access_token, source=CredentialSource.CLI)

    env_token = os.environ.get(ENV_ACCESS_TOKEN)
    if env_token:
        return Credential(access_token=env_token, source=CredentialSource.ENVIRONMENT)

    path = Path(credentials_file) if credentials_file else DEFAULT_CREDENTIALS_FILE
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not read credentials file %s: %s", path, exc)
        return None

    oauth = data.get("claudeAiOauth") or {}
    token = oauth.get("accessToken")
    if not token:
        return None
    expires_ms = oauth.get("expiresAt")
    return Credential(
        access_token=token,
        source=CredentialSource.INTERACTIVE,
        refresh_token=oauth.get("refreshToken"),
        expires_at=expires_ms / 1000.0 if expires_ms else None,
    )


def save_credential(credential: Credential, credentials_file: str | Path) -> None:
    """Write a refreshed interactive credential back, keeping unrelated keys."""
    path = Path(credentials_file)
    try:
        data = json.loads(path.read_text(encoding="utf-8")) if path.exists() else {}
    except (OSError, json.JSONDecodeError):
        data = {}
    oauth = data.setdefault("claudeAiOauth", {})
    oauth["accessToken"] = credential.access_token
    oauth["refreshToken"] = credential.refresh_token
    oauth["expiresAt"] = int(credential.expires_at * 1000) if credential.expires_at else None
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


class OAuthRefresher:
    """Exchange a refresh token for a new access token."""

    def __init__(
        self,
        token_url: str = DEFAULT_TOKEN_URL,
        client_id: str = DEFAULT_CLIENT_ID,
        credentials_file: str | Path | None = None,
        timeout: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self.credentials_file = credentials_file
        self.timeout = timeout
        self._clock = clock

    def __call__(self, credential: Credential) -> Credential:
        if credential.is_static:
            raise CredentialError(
                f"{credential.source.value} credential has no refresh token", recoverable=False
            )
        try:
            resp = requests.post(
                self.token_url,
                json={
                    "grant_type": "refresh_token",
                    "refresh_token": credential.refresh_token,
                    "client_id": self.client_id,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise CredentialError(f"Token refresh request failed: {exc}") from exc

        if resp.status_code in (400, 401, 403):
            raise CredentialError(
                f"Refresh token rejected ({resp.status_code}): {resp.text[:200]}",
                recoverable=False,
            )
        if not resp.ok:
            raise CredentialError(f"Token endpoint returned {resp.status_code}: {resp.text[:200]}")

        payload = resp.json()
        expires_in = payload.get("expires_in")
        refreshed = Credential(
            access_token=payload["access_token"],
            source=CredentialSource.INTERACTIVE,
            refresh_token=payload.get("refresh_token") or credential.refresh_token,
            expires_at=self._clock() + float(expires_in) if expires_in else None,
        )
        if self.credentials_file:
            try:
                save_credential(refreshed, self.credentials_file)
            except OSError as exc:
                logger.warning("Could not persist refreshed credential: %s", exc)
        return refreshed


class TokenRefreshCoordinator:
    """Keeps the agent credential fresh and inflates the poll interval on failure.

    A refresh failure never stops the daemon. While the coordinator is
    degraded, agent-dependent stages are skipped and only scan-based work
    continues.
    """

    def __init__(
        self,
        credential: Credential | None,
        refresher: Callable[[Credential], Credential],
        base_poll_interval: float,
        refresh_margin: float = REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.credential = credential
        self.refresher = refresher
        self.base_poll_interval = base_poll_interval
        self.poll_interval = base_poll_interval
        self.refresh_margin = refresh_margin
        self.failure_count = 0
        self.degraded = credential is None
        self.warning: str | None = None if credential else "No agent credential configured"
        self._clock = clock
        self._gave_up = False

    @property
    def agent_available(self) -> bool:
        return self.credential is not None and not self.degraded

    def maybe_refresh(self, credential: Credential | None = None) -> Credential | None:
        if credential is not None:
            self.credential = credential
        current = self.credential
        if current is None:
            return None

        now = self._clock()
        if not current.expires_within(self.refresh_margin, now):
            return current

        if self._gave_up:
            logger.warning("Agent credential cannot self-heal: %s", self.warning)
            return current

        logger.info("Agent credential expires soon, refreshing")
        try:
            refreshed = self.refresher(current)
        except CredentialError as exc:
            self._record_failure(current, exc, now)
            return current
        except requests.RequestException as exc:
            self._record_failure(current, CredentialError(str(exc)), now)
            return current

        self.credential = refreshed
        self.failure_count = 0
        self.poll_interval = self.base_poll_interval
        self.degraded = False
        self.warning = None
        logger.info("Agent credential refreshed")
        return refreshed

    def _record_failure(self, current: Credential, exc: CredentialError, now: float) -> None:
        self.failure_count += 1
        self.poll_interval = self.base_poll_interval * min(
            2 ** self.failure_count, MAX_BACKOFF_MULTIPLIER
        )
        if current.is_static or not exc.recoverable:
            self._gave_up = True
            self.warning = (
                f"{current.source.value} credential cannot be refreshed automatically ({exc}); "
                "provide a new credential and restart. Agent stages are disabled until then."
            )
            logger.warning(self.warning)
        else:
            self.warning = f"Token refresh failed {self.failure_count} time(s): {exc}"
            logger.error(self.warning)
        self.degraded = self._gave_up or current.expires_within(0, now)
        logger.warning("Poll interval raised to %.0fs", self.poll_interval)
