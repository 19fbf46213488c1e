"""Runtime validators for constructor arguments."""

from __future__ import annotations

from collections.abc import Mapping


def _type_name(value: object) -> str:
    return type(value).__name__


def ensure_str(value: object, *, name: str) -> None:
    if not isinstance(value, str):
        raise TypeError(f"{name} must be str, got {_type_name(value)}")


def ensure_optional_str(value: object | None, *, name: str) -> None:
    if value is not None and not isinstance(value, str):
        raise TypeError(f"{name} must be str or None, got {_type_name(value)}")


def ensure_callable(value: object, *, name: str) -> None:
    if not callable(value):
        raise TypeError(f"{name} must be callable, got {_type_name(value)}")


def ensure_optional_callable(value: object | None, *, name: str) -> None:
    if value is not None and not callable(value):
        raise TypeError(f"{name} must be callable or None, got {_type_name(value)}")


def ensure_number(value: object, *, name: str) -> None:
    # bool is an int subclass but never a meaningful duration
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{name} must be int or float, got {_type_name(value)}")


def ensure_optional_number(value: object | None, *, name: str) -> None:
    if value is not None:
        ensure_number(value, name=name)


def ensure_mapping(value: object, *, name: str) -> None:
    if not isinstance(value, Mapping):
        raise TypeError(f"{name} must be a mapping, got {_type_name(value)}")


def ensure_exception(value: object, *, name: str) -> None:
    if not isinstance(value, BaseException):
        raise TypeError(f"{name} must be BaseException, got {_type_name(value)}")


__all__ = [
    "ensure_callable",
    "ensure_exception",
    "ensure_mapping",
    "ensure_number",
    "ensure_optional_callable",
    "ensure_optional_number",
    "ensure_optional_str",
    "ensure_str",
]
