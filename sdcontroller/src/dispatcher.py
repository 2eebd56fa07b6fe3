from __future__ import annotations

import importlib
import logging
from typing import Any, Protocol

from sdcontroller.src.errors import ConfigError
from sdcontroller.src.models import Operation, SelectiveDeployment


class Dispatcher(Protocol):
    """Placement logic the engine hands resolved work to.

    ``get_selective_deployments`` returns ``(namespace, name)`` pairs of the
    selective deployments owning workloads on a node; ``check_controller_status``
    tells whether a workload change concerns declared selective deployments
    and which ones. The boolean in both results reports whether anything
    matched.
    """

    def init(self) -> None: ...

    def object_created(self, obj: SelectiveDeployment) -> None: ...

    def object_updated(self, obj: SelectiveDeployment, delta: str) -> None: ...

    def object_deleted(self, obj: SelectiveDeployment | None, delta: str) -> None: ...

    def configure_controllers(self) -> None: ...

    def get_selective_deployments(self, node_name: str) -> tuple[list[tuple[str, str]], bool]: ...

    def check_controller_status(
        self, old: Any, new: Any, operation: Operation
    ) -> tuple[list[SelectiveDeployment], bool]: ...


class LoggingDispatcher:
    """Dispatcher that performs no placement and only logs what it receives."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def init(self) -> None:
        self.logger.info("Logging dispatcher initialised; no placement will be performed")

    def object_created(self, obj: SelectiveDeployment) -> None:
        self.logger.info("object_created %s", obj.key)

    def object_updated(self, obj: SelectiveDeployment, delta: str) -> None:
        self.logger.info("object_updated %s delta=%r", obj.key, delta)

    def object_deleted(self, obj: SelectiveDeployment | None, delta: str) -> None:
        self.logger.info("object_deleted delta=%r", delta)

    def configure_controllers(self) -> None:
        self.logger.debug("configure_controllers")

    def get_selective_deployments(self, node_name: str) -> tuple[list[tuple[str, str]], bool]:
        return [], False

    def check_controller_status(
        self, old: Any, new: Any, operation: Operation
    ) -> tuple[list[SelectiveDeployment], bool]:
        return [], False


def load_dispatcher(path: str) -> Dispatcher:
    """Build the dispatcher named by a ``module:attribute`` factory path.

    An empty path selects :class:`LoggingDispatcher`.
    """
    if not path.strip():
        return LoggingDispatcher()

    module_name, separator, attribute = path.strip().partition(":")
    if not separator or not module_name or not attribute:
        raise ConfigError(f"DISPATCHER must look like 'module:factory', got: {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"DISPATCHER module {module_name!r} cannot be imported") from exc

    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ConfigError(f"DISPATCHER attribute {attribute!r} is not callable")
    return factory()
