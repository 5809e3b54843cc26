"""Expectation helpers used in place of bare assert statements."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TypeVar

T = TypeVar("T")


def _prefix(label: str | None) -> str:
    return f"{label}: " if label else ""


def expect_true(condition: object, *, message: str | None = None) -> None:
    """
    Fail unless ``condition`` is truthy.

    Raises
    ------
    AssertionError
        If ``condition`` is falsy.
    """
    if not condition:
        raise AssertionError(message or "Expected condition to be true")


def expect_equal(actual: T, expected: T, *, label: str | None = None) -> None:
    """
    Fail unless ``actual == expected``.

    Raises
    ------
    AssertionError
        If the values differ.
    """
    if actual != expected:
        message = f"{_prefix(label)}expected {expected!r}, got {actual!r}"
        raise AssertionError(message)


def expect_in(member: T, container: Iterable[T], *, label: str | None = None) -> None:
    """
    Fail unless ``member`` is in ``container``.

    Raises
    ------
    AssertionError
        If ``member`` is missing.
    """
    if member not in container:
        message = f"{_prefix(label)}{member!r} not found in {container!r}"
        raise AssertionError(message)


def expect_none(value: object, *, label: str | None = None) -> None:
    """
    Fail unless ``value`` is ``None``.

    Raises
    ------
    AssertionError
        If ``value`` is not ``None``.
    """
    if value is not None:
        message = f"{_prefix(label)}expected None, got {value!r}"
        raise AssertionError(message)


def expect_is_instance(
    value: object, expected_type: type[object], *, label: str | None = None
) -> None:
    """
    Fail unless ``value`` is an instance of ``expected_type``.

    Raises
    ------
    AssertionError
        On a type mismatch.
    """
    if not isinstance(value, expected_type):
        message = f"{_prefix(label)}expected instance of {expected_type!r}, got {type(value)!r}"
        raise AssertionError(message)


def expect_length(sequence: Iterable[object], expected: int, *, label: str | None = None) -> None:
    """
    Fail unless ``sequence`` holds exactly ``expected`` items.

    Raises
    ------
    AssertionError
        On a length mismatch.
    """
    actual = len(list(sequence))
    if actual != expected:
        message = f"{_prefix(label)}expected length {expected}, got {actual}"
        raise AssertionError(message)
