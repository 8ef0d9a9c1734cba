from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import pytest


class MockSpan:
    name: str
    attributes: Dict[str, Any]
    events: List[Tuple[str, Dict[str, Any]]]
    ended: bool
    status: Optional[Any]

    def __init__(self, name: str = "span", attributes: Optional[Dict[str, Any]] = None) -> None:
        self.name = name
        self.attributes = dict(attributes or {})
        self.events = []
        self.ended = False
        self.status = None
        self.set_order: List[str] = []
        self._context = SimpleNamespace(is_valid=True)

    def set_attribute(self, key: str, value: Any) -> None:
        if self.ended:
            raise AssertionError(f"attribute {key} set after span end")
        self.attributes[key] = value
        self.set_order.append(key)

    def add_event(self, name: str, attributes: Optional[Dict[str, Any]] = None) -> None:
        self.events.append((name, attributes or {}))

    def set_status(self, status: Any) -> None:
        self.status = status

    def end(self) -> None:
        self.ended = True

    def get_span_context(self) -> Any:
        return self._context


@pytest.fixture
def span() -> MockSpan:
    return MockSpan()
