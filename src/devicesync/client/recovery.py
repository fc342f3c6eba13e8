"""Silent session recovery.

This module provides:
- SessionRecovery: Reissues a session token from the stored identity
- RecoveryResult: Outcome reported back to the ConnectionManager

Recovery never clears the paired flag. A backend that is briefly down
during recovery must not unpair the user; the UI decides whether to ask
for a new pairing code after ``session_expired(recoverable=False)``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from devicesync.client.api import APIError
from devicesync.client.session_store import SessionStoreError
from devicesync.client.signals import ErrorCategory

if TYPE_CHECKING:
    from devicesync.client.api import BackendClient
    from devicesync.client.session_store import SessionStore
    from devicesync.client.signals import EngineSignals

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    """Outcome of a recovery attempt."""

    recovered: bool
    reason: str | None = None


class SessionRecovery:
    """Exchanges stored device/user identity for a fresh session token."""

    def __init__(
        self,
        session_store: SessionStore,
        backend: BackendClient,
        signals: EngineSignals,
        timeout: float = 10.0,
    ) -> None:
        """Initialize session recovery.

        Args:
            session_store: Store holding the identity and receiving the token.
            backend: Backend client used for the recover call.
            signals: Engine signals (session_recovered).
            timeout: Bound on the whole recover call.
        """
        self._session_store = session_store
        self._backend = backend
        self._signals = signals
        self._timeout = timeout

    async def recover(self) -> RecoveryResult:
        """Attempt recovery.

        Returns:
            RecoveryResult(recovered=True) once the fresh token is stored.
        """
        loop = asyncio.get_running_loop()

        try:
            session = await loop.run_in_executor(None, self._session_store.load)
        except SessionStoreError as e:
            logger.error("Cannot read session for recovery: %s", e)
            return RecoveryResult(False, str(e))

        if session is None or not session.has_identity:
            logger.warning("No stored device identity, session cannot be recovered")
            return RecoveryResult(False, "no stored identity")

        logger.info("Recovering session for device %s", session.device_id)
        call = functools.partial(
            self._backend.recover_session,
            session.device_id,
            session.remote_user_id,
            timeout=self._timeout,
        )
        try:
            grant = await asyncio.wait_for(
                loop.run_in_executor(None, call), timeout=self._timeout
            )
        except TimeoutError:
            logger.warning("Session recovery timed out after %.0fs", self._timeout)
            return RecoveryResult(False, "timed out")
        except APIError as e:
            logger.warning("Session recovery refused: %s", e)
            return RecoveryResult(False, str(e))
        except Exception as e:
            self._signals.sink.report(ErrorCategory.RECOVERY, e, session.device_id)
            return RecoveryResult(False, str(e))

        try:
            await loop.run_in_executor(
                None, self._session_store.update_token, grant.session_token, grant.expires_at
            )
        except SessionStoreError as e:
            logger.error("Cannot store recovered token: %s", e)
            return RecoveryResult(False, str(e))

        logger.info("Session recovered, token valid until %s", grant.expires_at.isoformat())
        self._signals.session_recovered.emit()
        return RecoveryResult(True)
