"""Acquisition coordinators, registered per media type."""

from __future__ import annotations

from typing import Callable, TypeVar

from requestarr.core.models import MediaType

_T = TypeVar("_T")

_COORDINATOR_REGISTRY: dict[MediaType, type] = {}
_COORDINATORS_LOADED = False


def register_coordinator(media_type: MediaType) -> Callable[[_T], _T]:
    """Class decorator registering the coordinator responsible for ``media_type``."""

    def decorator(cls: _T) -> _T:
        _COORDINATOR_REGISTRY[MediaType(media_type)] = cls  # type: ignore[assignment]
        return cls

    return decorator


def load_coordinators() -> None:
    global _COORDINATORS_LOADED
    if _COORDINATORS_LOADED:
        return

    from . import movie  # noqa: F401
    from . import series  # noqa: F401

    _COORDINATORS_LOADED = True


def get_coordinator_classes() -> dict[MediaType, type]:
    load_coordinators()
    return dict(_COORDINATOR_REGISTRY)


def build_coordinators(*args, **kwargs) -> list:
    """Instantiate every registered coordinator with the same collaborators."""
    return [cls(*args, **kwargs) for cls in get_coordinator_classes().values()]
