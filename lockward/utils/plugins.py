import logging
from dataclasses import dataclass
from importlib.metadata import EntryPoint, entry_points
from typing import Generic, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Provider(Generic[T]):
    name: str
    model_class: Type[T]


def _load_provider(entry: EntryPoint, provider_type: Type[T]) -> Provider[T] | None:
    provider_class = entry.load()
    if not isinstance(provider_class, type) or not issubclass(provider_class, provider_type):
        logger.warning("Plugin %s (%s) does not implement %s - ignoring it", entry.name, entry.value, provider_type.__name__)
        return None

    return Provider(entry.name, provider_class)


def get_provider(provider_type: Type[T], entrypoint_group: str, name: str) -> Provider[T]:
    """Load a single plugin by name - other plugins of the group are not imported.

    Raises:
        ValueError: no valid plugin with that name is registered.
    """
    matches = entry_points(group=entrypoint_group, name=name)
    provider = next((_load_provider(entry, provider_type) for entry in matches), None)
    if provider is None:
        available = sorted(entry.name for entry in entry_points(group=entrypoint_group))
        raise ValueError(f"Unknown plugin {name} in {entrypoint_group} - available: {', '.join(available)}")

    return provider
