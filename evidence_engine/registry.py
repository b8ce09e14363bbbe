"""
Connector registry: discovers connector classes in ``source_connectors`` and
builds connector instances from source configuration.
"""

from __future__ import annotations

import importlib
import inspect
import logging
import pathlib
from typing import Dict, Iterable, List, Optional, Type

from .interfaces import Connector, ConnectorContext
from .models import ConnectorConfig

logger = logging.getLogger(__name__)

CONNECTOR_PACKAGE = "source_connectors"

# Global registry of discovered connector classes, keyed by ``kind``
_REGISTRY: Dict[str, Type[Connector]] = {}


def _connector_dir() -> pathlib.Path:
    package = importlib.import_module(CONNECTOR_PACKAGE)
    return pathlib.Path(package.__file__).parent


def refresh_registry() -> None:
    """Import every module under source_connectors/ and register Connector subclasses."""
    _REGISTRY.clear()

    connector_dir = _connector_dir()
    module_count = 0
    for py_file in sorted(connector_dir.rglob("*.py")):
        if py_file.name.startswith("_"):
            continue
        relative = py_file.relative_to(connector_dir).with_suffix("")
        module_name = ".".join((CONNECTOR_PACKAGE, *relative.parts))
        try:
            mod = importlib.import_module(module_name)
        except Exception as e:
            logger.error(f"Failed to load connector module {module_name}: {e}")
            continue
        module_count += 1

        for _, obj in inspect.getmembers(mod, inspect.isclass):
            if (issubclass(obj, Connector)
                    and not inspect.isabstract(obj)
                    and obj.__module__ == mod.__name__):
                kind = obj.kind
                if kind in _REGISTRY and _REGISTRY[kind] is not obj:
                    logger.warning(f"Connector kind '{kind}' registered twice; keeping {_REGISTRY[kind].__name__}")
                    continue
                _REGISTRY[kind] = obj
                logger.debug(f"Registered connector: {kind} -> {obj.__name__}")

    logger.info(f"Connector discovery complete: {module_count} modules, {len(_REGISTRY)} kinds")


def get(kind: str) -> Type[Connector]:
    """Connector class registered for *kind*.

    Raises:
        KeyError: If no connector declares that kind
    """
    if not _REGISTRY:
        refresh_registry()

    if kind not in _REGISTRY:
        raise KeyError(f"Connector kind '{kind}' not found. Available: {sorted(_REGISTRY)}")
    return _REGISTRY[kind]


def list_available() -> Dict[str, Type[Connector]]:
    if not _REGISTRY:
        refresh_registry()
    return _REGISTRY.copy()


def builtin_sources() -> Dict[str, ConnectorConfig]:
    """Configs for the built-in catalog sources."""
    from source_connectors.catalog import builtin_configs
    return builtin_configs()


def build_connector(config: ConnectorConfig, context: Optional[ConnectorContext] = None) -> Connector:
    return get(config.kind)(config, context)


def build_connectors(
    configs: Iterable[ConnectorConfig],
    context: Optional[ConnectorContext] = None,
    source_ids: Optional[Iterable[str]] = None,
    *,
    include_disabled: bool = False,
) -> List[Connector]:
    """Connectors for *configs*, optionally limited to *source_ids*.

    Unknown kinds are logged and skipped.
    """
    wanted = set(source_ids) if source_ids else None
    connectors: List[Connector] = []
    for config in configs:
        if wanted is not None and config.source_id not in wanted:
            continue
        if not config.enabled and not include_disabled:
            continue
        try:
            connectors.append(build_connector(config, context))
        except KeyError as e:
            logger.error(f"Cannot build connector for {config.source_id}: {e}")
    if wanted:
        missing = wanted - {c.source_id for c in connectors}
        if missing:
            logger.warning(f"Unknown or unbuildable source id(s): {sorted(missing)}")
    return connectors
