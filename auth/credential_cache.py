from __future__ import annotations

import time
from typing import Callable

from auth.events import StatusChannel
from auth.models import Credential

DEFAULT_LEAD_TIME_SECONDS = 300.0


class CredentialCache:
    """Holds the current credential as one immutable reference.

    Mutations replace the reference, so readers always see either the old
    or the new credential in full.
    """

    def __init__(
        self,
        *,
        status: StatusChannel | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credential: Credential | None = None
        self._announced = False
        self._status = status or StatusChannel()
        self._clock = clock

    @property
    def status(self) -> StatusChannel:
        return self._status

    def get(self) -> Credential | None:
        return self._credential

    def is_fresh(self, lead_time: float = DEFAULT_LEAD_TIME_SECONDS) -> bool:
        credential = self._credential
        if credential is None:
            return False
        return credential.is_fresh(self._clock(), lead_time)

    def set(self, credential: Credential) -> None:
        if credential.is_expired(self._clock()):
            raise ValueError("Refusing to cache an expired credential.")
        self._credential = credential
        if not self._announced:
            self._announced = True
            self._status.publish(True)

    def restore(self, credential: Credential) -> None:
        """Load a persisted credential without announcing authentication."""
        if credential.is_expired(self._clock()):
            return
        self._credential = credential

    def clear(self) -> None:
        self._credential = None
        if self._announced:
            self._announced = False
            self._status.publish(False)
