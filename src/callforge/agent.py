from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from .controller import Invocation, new_call_id
from .outcome import Outcome, coerce_outcome

if TYPE_CHECKING:
    from .runtime import Runtime

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class Agent:
    """Caller-facing handle for one role.

    Methods registered with ``register`` run directly. Any other method name
    is forged at call time by the runtime's lifecycle controller.
    """

    def __init__(
        self,
        role: str,
        runtime: "Runtime",
        *,
        contracts: Optional[Dict[str, Dict[str, Any]]] = None,
        deliverable: Optional[Dict[str, Any]] = None,
        depth: int = 0,
        trace_id: Optional[str] = None,
        parent_call_id: Optional[str] = None,
    ) -> None:
        self.role = role
        self.runtime = runtime
        self.contracts = dict(contracts or {})
        self.deliverable = deliverable
        self.depth = depth
        self.trace_id = trace_id or new_call_id()
        self.parent_call_id = parent_call_id
        self._handlers: Dict[str, Handler] = {}

    @property
    def context(self) -> Dict[str, Any]:
        return self.runtime.context_for(self.role)

    def register(self, method_name: str, handler: Handler) -> None:
        self._handlers[method_name] = handler

    def contract_for(self, method_name: str) -> Optional[Dict[str, Any]]:
        contract = self.contracts.get(method_name)
        if contract is not None:
            return contract
        if self.deliverable is not None:
            return {"deliverable": self.deliverable}
        return None

    def call(self, method_name: str, *args: Any, **kwargs: Any) -> Outcome:
        handler = self._handlers.get(method_name)
        if handler is not None:
            return self._call_handler(handler, method_name, args, kwargs)
        invocation = Invocation(
            role=self.role,
            method_name=method_name,
            args=tuple(args),
            kwargs=dict(kwargs),
            depth=self.depth,
            trace_id=self.trace_id,
            parent_call_id=self.parent_call_id,
            contract=self.contract_for(method_name),
        )
        return self.runtime.controller.invoke(invocation, self.context)

    def _call_handler(
        self, handler: Handler, method_name: str, args: Any, kwargs: Dict[str, Any]
    ) -> Outcome:
        try:
            raw = handler(self, *args, **kwargs)
        except Exception as exc:  # noqa: BLE001
            logger.debug("handler %s.%s raised %s", self.role, method_name, exc)
            return Outcome.error(
                "execution",
                f"{exc.__class__.__name__}: {exc}",
                tool_role=self.role,
                method_name=method_name,
            )
        return coerce_outcome(raw, tool_role=self.role, method_name=method_name)

    def __repr__(self) -> str:
        return f"Agent({self.role!r}, depth={self.depth})"
