"""Per-call context handed to implementations that ask for it."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class CallContext:
    """Context passed to function implementations during dispatch.

    An implementation receives it when its first parameter is annotated
    ``CallContext``; the parameter is left out of the generated schema.

    Attributes:
        function_name: Name of the function being invoked.
        call_id: Optional caller-provided call ID (e.g. from an OpenAI tool_call).
        extra: Arbitrary shared state supplied by the orchestration layer.
    """

    function_name: str = ""
    call_id: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)
