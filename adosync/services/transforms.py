"""Named value transforms used by field mappings.

Each transform is a pure forward function (work item value -> internal value)
and, where it makes sense, a reverse (internal value -> work item value).
"""

import enum
import json
import re
from typing import Any, Callable, Optional

from adosync.errors import ValidationError


def _state_to_status(value: Any) -> str:
    state = str(value).lower()
    if state in ("new", "active"):
        return "GREEN"
    if state in ("resolved", "closed"):
        return "RED"
    return "YELLOW"


def _status_to_state(value: Any) -> str:
    return "Resolved" if str(value).upper() == "RED" else "Active"


def _state_to_risk_status(value: Any) -> str:
    state = str(value).lower()
    if state == "resolved":
        return "MITIGATED"
    if state == "closed":
        return "CLOSED"
    return "OPEN"


_RISK_STATUS_TO_STATE = {"OPEN": "Active", "MITIGATED": "Resolved", "CLOSED": "Closed"}


def _risk_status_to_state(value: Any) -> str:
    return _RISK_STATUS_TO_STATE.get(str(value).upper(), "Active")


def _state_to_action_status(value: Any) -> str:
    state = str(value).lower()
    if state in ("active", "in progress"):
        return "IN_PROGRESS"
    if state in ("resolved", "closed", "done"):
        return "DONE"
    return "OPEN"


_ACTION_STATUS_TO_STATE = {"OPEN": "New", "IN_PROGRESS": "Active", "DONE": "Closed"}


def _action_status_to_state(value: Any) -> str:
    return _ACTION_STATUS_TO_STATE.get(str(value).upper(), "New")


_SEVERITY_BY_NUMBER = {1: "LOW", 2: "MEDIUM", 3: "HIGH"}
_NUMBER_BY_SEVERITY = {name: number for number, name in _SEVERITY_BY_NUMBER.items()}
_LEADING_INT = re.compile(r"^\s*(\d+)")


def _severity_to_internal(value: Any) -> str:
    # Work items carry either a bare number or a picklist string such as "2 - Medium".
    if isinstance(value, bool):
        return "MEDIUM"
    if isinstance(value, (int, float)):
        number = int(value)
    else:
        match = _LEADING_INT.match(str(value))
        number = int(match.group(1)) if match else None
    return _SEVERITY_BY_NUMBER.get(number, "MEDIUM")


def _severity_to_external(value: Any) -> int:
    return _NUMBER_BY_SEVERITY.get(str(value).upper(), 2)


def _extract_display_name(value: Any) -> Optional[str]:
    """Identity reference (e.g. System.AssignedTo) -> a person's name"""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        if value.get("displayName"):
            return value["displayName"]
        if value.get("uniqueName"):
            return str(value["uniqueName"]).split("@")[0]
    return None


class Transform(str, enum.Enum):
    """Closed set of transforms a field mapping may name"""

    STATE_TO_STATUS = "state_to_status"
    STATE_TO_RISK_STATUS = "state_to_risk_status"
    STATE_TO_ACTION_STATUS = "state_to_action_status"
    SEVERITY_MAPPING = "severity_mapping"
    EXTRACT_DISPLAY_NAME = "extract_display_name"

    @property
    def forward_fn(self) -> Callable[[Any], Any]:
        return _FUNCTIONS[self][0]

    @property
    def reverse_fn(self) -> Optional[Callable[[Any], Any]]:
        return _FUNCTIONS[self][1]

    @property
    def reversible(self) -> bool:
        return self.reverse_fn is not None

    def forward(self, value: Any) -> Any:
        return self.forward_fn(value)

    def reverse(self, value: Any) -> Any:
        if self.reverse_fn is None:
            raise ValidationError(f"Transform '{self.value}' cannot be applied in reverse")
        return self.reverse_fn(value)

    def to_spec(self) -> str:
        return json.dumps({"type": self.value})


_FUNCTIONS = {
    Transform.STATE_TO_STATUS: (_state_to_status, _status_to_state),
    Transform.STATE_TO_RISK_STATUS: (_state_to_risk_status, _risk_status_to_state),
    Transform.STATE_TO_ACTION_STATUS: (_state_to_action_status, _action_status_to_state),
    Transform.SEVERITY_MAPPING: (_severity_to_internal, _severity_to_external),
    # Writing identities back needs a directory lookup we don't do.
    Transform.EXTRACT_DISPLAY_NAME: (_extract_display_name, None),
}


def parse_transform_spec(spec: Optional[str]) -> Transform:
    """Parse a stored transform spec (`{"type": "<name>"}`) into a Transform."""
    if not spec:
        raise ValidationError("Transform mapping requires a transform spec")
    try:
        data = json.loads(spec)
    except ValueError as e:
        raise ValidationError(f"Transform spec is not valid JSON: {spec!r}") from e
    name = data.get("type") if isinstance(data, dict) else None
    try:
        return Transform(name)
    except ValueError as e:
        allowed = ", ".join(t.value for t in Transform)
        raise ValidationError(f"Unknown transform {name!r}; expected one of: {allowed}") from e
