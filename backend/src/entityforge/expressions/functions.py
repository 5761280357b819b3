"""Function registry for the expression language.

Functions are callable from expressions (e.g. ``len(name) > 0``,
``sum(pluck(related.items, "amount"))``).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable


class FunctionCategory(Enum):
    STRING = "string"
    DATE = "date"
    MATH = "math"
    COLLECTION = "collection"
    LOGIC = "logic"


@dataclass
class FunctionDefinition:
    """An expression function.

    Attributes:
        name: Function name as used in expressions
        description: Human-readable description
        category: Category for documentation organization
        implementation: The Python callable
        min_args: Minimum number of arguments
        max_args: Maximum number of arguments, None for variadic
    """

    name: str
    description: str
    category: FunctionCategory
    implementation: Callable[..., Any]
    min_args: int = 0
    max_args: int | None = None

    def check_arity(self, count: int) -> str | None:
        """Return an error message if ``count`` arguments is not acceptable."""
        if count < self.min_args:
            return f"{self.name}() expects at least {self.min_args} argument(s), got {count}"
        if self.max_args is not None and count > self.max_args:
            return f"{self.name}() expects at most {self.max_args} argument(s), got {count}"
        return None


class FunctionRegistry:
    """Registry for expression functions.

    Example:
        FunctionRegistry.register(FunctionDefinition(
            name="len", description="...", category=FunctionCategory.STRING,
            implementation=_len, min_args=1, max_args=1,
        ))
        FunctionRegistry.get("len").implementation("hello")  # 5
    """

    _functions: dict[str, FunctionDefinition] = {}

    @classmethod
    def register(cls, func_def: FunctionDefinition) -> None:
        cls._functions[func_def.name] = func_def

    @classmethod
    def get(cls, name: str) -> FunctionDefinition:
        """Get a function definition by name.

        Raises:
            ValueError: If function is not registered
        """
        if name not in cls._functions:
            raise ValueError(f"Unknown function: {name}")
        return cls._functions[name]

    @classmethod
    def is_registered(cls, name: str) -> bool:
        return name in cls._functions

    @classmethod
    def clear(cls) -> None:
        """Clear all registrations. Primarily for testing."""
        cls._functions.clear()
