from __future__ import annotations

import math
from dataclasses import dataclass
from fractions import Fraction
from functools import cached_property
from typing import Any, Iterator, Mapping, Sequence, Union

Number = Union[int, float]


def _as_fraction(value: Any, field_name: str) -> Fraction:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field_name} must be a number, got {value!r}.")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"{field_name} must be finite, got {value!r}.")
    # Go through the decimal text so 0.1 means one tenth, not its binary neighbour.
    return Fraction(str(value))


@dataclass(frozen=True)
class Parameter:
    name: str
    min_value: Number
    max_value: Number
    step: Number

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Parameter name must be a non-empty string.")
        low, high, step = self._bounds
        if step <= 0:
            raise ValueError(f"Parameter '{self.name}': step must be positive.")
        if low > high:
            raise ValueError(f"Parameter '{self.name}': min must not exceed max.")

    @cached_property
    def _bounds(self) -> tuple[Fraction, Fraction, Fraction]:
        return (
            _as_fraction(self.min_value, f"{self.name}.min"),
            _as_fraction(self.max_value, f"{self.name}.max"),
            _as_fraction(self.step, f"{self.name}.step"),
        )

    @property
    def is_integral(self) -> bool:
        return all(isinstance(v, int) for v in (self.min_value, self.max_value, self.step))

    def value_count(self) -> int:
        low, high, step = self._bounds
        return math.floor((high - low) / step) + 1

    def value_at(self, position: int) -> Number:
        if position < 0 or position >= self.value_count():
            raise IndexError(f"Parameter '{self.name}' has no value at position {position}.")
        low, _, step = self._bounds
        value = low + step * position
        if self.is_integral:
            return int(value)
        return float(value)

    def discrete_values(self) -> Iterator[Number]:
        for position in range(self.value_count()):
            yield self.value_at(position)


@dataclass(frozen=True)
class Assignment:
    """One concrete value per parameter, labelled by enumeration position."""

    index: int
    names: tuple[str, ...]
    values: tuple[Number, ...]

    def as_dict(self) -> dict[str, Number]:
        return dict(zip(self.names, self.values))

    def __getitem__(self, name: str) -> Number:
        try:
            return self.values[self.names.index(name)]
        except ValueError:
            raise KeyError(name) from None


@dataclass(frozen=True)
class ParameterSpace:
    parameters: tuple[Parameter, ...]

    def __post_init__(self) -> None:
        parameters = tuple(self.parameters)
        object.__setattr__(self, "parameters", parameters)
        if not parameters:
            raise ValueError("Parameter space must contain at least one parameter.")
        for param in parameters:
            if not isinstance(param, Parameter):
                raise TypeError(f"Expected Parameter, got {type(param).__name__}.")
        seen: set[str] = set()
        duplicates: set[str] = set()
        for param in parameters:
            if param.name in seen:
                duplicates.add(param.name)
            seen.add(param.name)
        if duplicates:
            raise ValueError(f"Duplicate parameter names: {sorted(duplicates)}")

    @classmethod
    def from_mapping(cls, ranges: Mapping[str, Mapping[str, Any]]) -> ParameterSpace:
        """Build a space from ``{name: {min, max, step}}`` keeping insertion order."""
        parameters: list[Parameter] = []
        for name, bounds in ranges.items():
            if not isinstance(bounds, Mapping):
                raise ValueError(f"Range for parameter '{name}' must be a mapping with min/max/step.")
            missing = [key for key in ("min", "max", "step") if key not in bounds]
            if missing:
                raise ValueError(f"Range for parameter '{name}' is missing keys: {missing}")
            parameters.append(
                Parameter(
                    name=str(name),
                    min_value=bounds["min"],
                    max_value=bounds["max"],
                    step=bounds["step"],
                )
            )
        return cls(parameters=tuple(parameters))

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(p.name for p in self.parameters)

    def parameter(self, name: str) -> Parameter:
        for param in self.parameters:
            if param.name == name:
                return param
        raise KeyError(name)

    def combination_count(self) -> int:
        return math.prod(p.value_count() for p in self.parameters)

    def discrete_values(self, parameter: Parameter | str) -> Iterator[Number]:
        if isinstance(parameter, str):
            parameter = self.parameter(parameter)
        return parameter.discrete_values()

    def assignment_at(self, index: int) -> Assignment:
        radices = [p.value_count() for p in self.parameters]
        if index < 0 or index >= math.prod(radices):
            raise IndexError(f"Combination index {index} is outside the parameter space.")
        digits = _decode_mixed_radix(index, radices)
        values = tuple(p.value_at(d) for p, d in zip(self.parameters, digits))
        return Assignment(index=index, names=self.names, values=values)

    def assignments(self, *, start: int = 0) -> Iterator[Assignment]:
        return enumerate_assignments(self, start=start)


def _decode_mixed_radix(index: int, radices: Sequence[int]) -> list[int]:
    digits = [0] * len(radices)
    remainder = index
    for pos in range(len(radices) - 1, -1, -1):
        remainder, digits[pos] = divmod(remainder, radices[pos])
    return digits


def enumerate_assignments(space: ParameterSpace, *, start: int = 0) -> Iterator[Assignment]:
    """Yield every point of the space once; the last parameter varies fastest."""
    params = space.parameters
    names = space.names
    radices = [p.value_count() for p in params]
    total = math.prod(radices)
    if start < 0 or start > total:
        raise ValueError(f"start must be within [0, {total}], got {start}.")
    if start == total:
        return

    digits = _decode_mixed_radix(start, radices)
    values = [p.value_at(d) for p, d in zip(params, digits)]
    index = start
    while True:
        yield Assignment(index=index, names=names, values=tuple(values))
        index += 1
        pos = len(digits) - 1
        while pos >= 0:
            digits[pos] += 1
            if digits[pos] < radices[pos]:
                values[pos] = params[pos].value_at(digits[pos])
                break
            digits[pos] = 0
            values[pos] = params[pos].value_at(0)
            pos -= 1
        if pos < 0:
            return
