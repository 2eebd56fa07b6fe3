from __future__ import annotations

import logging

from sdcontroller.src.delta import delete_delta, update_delta
from sdcontroller.src.errors import KeyDerivationError
from sdcontroller.src.metrics import METRICS
from sdcontroller.src.models import Envelope, Operation, SelectiveDeployment, object_key


class EventNormalizer:
    """Turns selective deployment add/update/delete notifications into envelopes.

    Returns ``None`` for events that must not reach the queue: objects whose
    key cannot be derived, and updates that only touched ``status``. The
    latter are echoes of the dispatcher's own status writes.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def _key(self, sd: SelectiveDeployment) -> str | None:
        try:
            return object_key(sd)
        except KeyDerivationError:
            self.logger.debug("Dropping selective deployment event without a usable key")
            METRICS.events_suppressed_total.labels(reason="malformed").inc()
            return None

    def on_add(self, sd: SelectiveDeployment) -> Envelope | None:
        key = self._key(sd)
        if key is None:
            return None
        self.logger.info("Add selectivedeployment: %s", key)
        return Envelope(key=key, operation=Operation.CREATE)

    def on_update(self, old: SelectiveDeployment, new: SelectiveDeployment) -> Envelope | None:
        if old.status != new.status:
            METRICS.events_suppressed_total.labels(reason="status_echo").inc()
            return None

        key = self._key(new)
        if key is None:
            return None
        self.logger.info("Update selectivedeployment: %s", key)
        return Envelope(key=key, operation=Operation.UPDATE, delta=update_delta(old, new))

    def on_delete(self, sd: SelectiveDeployment) -> Envelope | None:
        key = self._key(sd)
        if key is None:
            return None
        self.logger.info("Delete selectivedeployment: %s", key)
        return Envelope(key=key, operation=Operation.DELETE, delta=delete_delta(sd))
