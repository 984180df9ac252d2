"""
Operation Dispatcher — routes each operation to the handler for its kind.

Behavioral Contract:
- Exactly one handler per OperationKind; custom handlers may replace defaults
- An operation with no registered handler raises OperationConfigError
"""

import logging
from typing import Dict, Optional

from visioner_kernel.models.operation import OperationBase, OperationKind
from visioner_kernel.models.scene import TokenState
from visioner_kernel.operations.aura import AuraVisibilityHandler
from visioner_kernel.operations.base import (
    ApplyContext,
    OperationConfigError,
    OperationHandler,
    OperationServices,
)
from visioner_kernel.operations.cover import OverrideCoverHandler, ProvideCoverHandler
from visioner_kernel.operations.distance import DistanceBasedVisibilityHandler
from visioner_kernel.operations.lighting import ModifyLightingHandler
from visioner_kernel.operations.off_guard import OffGuardSuppressionHandler
from visioner_kernel.operations.qualification import ModifyActionQualificationHandler
from visioner_kernel.operations.senses import ModifyDetectionModesHandler, ModifySensesHandler
from visioner_kernel.operations.visibility import ConditionalStateHandler, OverrideVisibilityHandler

logger = logging.getLogger(__name__)


class OperationDispatcher:
    """Handler lookup table over the closed set of operation kinds."""

    def __init__(self, services: OperationServices):
        self.services = services
        self._handlers: Dict[str, OperationHandler] = {}
        self._register_default_handlers()

    def _register_default_handlers(self) -> None:
        for handler_cls in (
            OverrideVisibilityHandler,
            OverrideCoverHandler,
            ProvideCoverHandler,
            ModifySensesHandler,
            ModifyDetectionModesHandler,
            ModifyLightingHandler,
            ConditionalStateHandler,
            DistanceBasedVisibilityHandler,
            AuraVisibilityHandler,
            OffGuardSuppressionHandler,
            ModifyActionQualificationHandler,
        ):
            self._handlers[handler_cls.kind.value] = handler_cls(self.services)

    def register_handler(self, kind: OperationKind, handler: OperationHandler) -> None:
        """Register a custom handler for an operation kind."""
        self._handlers[OperationKind(kind).value] = handler

    def handler_for(self, operation: OperationBase) -> OperationHandler:
        handler = self._handlers.get(operation.type)
        if handler is None:
            raise OperationConfigError(f"No handler registered for operation type {operation.type!r}")
        return handler

    def apply(self, operation: OperationBase, subject: Optional[TokenState], ctx: Optional[ApplyContext] = None) -> None:
        self.handler_for(operation).apply(operation, subject, ctx)

    def remove(self, operation: OperationBase, subject: Optional[TokenState], ctx: Optional[ApplyContext] = None) -> None:
        self.handler_for(operation).remove(operation, subject, ctx)
