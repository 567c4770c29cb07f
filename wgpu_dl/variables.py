"""Process-wide registry of named variables."""

import logging
from typing import Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class VariableRegistry:
    """Ordered name -> Variable mapping; a name maps to at most one live variable."""

    def __init__(self):
        self._variables: Dict[str, "Variable"] = {}

    def register(self, variable) -> None:
        if variable.name in self._variables:
            raise ValueError(f"Variable with name {variable.name} was already registered")
        self._variables[variable.name] = variable
        logger.debug(f"Registered variable {variable.name} shape={variable.shape}")

    def unregister(self, name: str) -> None:
        self._variables.pop(name, None)

    def get(self, name: str) -> Optional["Variable"]:
        return self._variables.get(name)

    def __getitem__(self, name: str):
        return self._variables[name]

    def __contains__(self, name: str) -> bool:
        return name in self._variables

    def __iter__(self) -> Iterator[str]:
        return iter(self._variables)

    def __len__(self) -> int:
        return len(self._variables)

    def values(self) -> List["Variable"]:
        return list(self._variables.values())

    def trainable(self) -> List["Variable"]:
        """Variables currently flagged trainable, in registration order."""
        return [v for v in self._variables.values() if v.trainable]

    def clear(self) -> None:
        self._variables.clear()
