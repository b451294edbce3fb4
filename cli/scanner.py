"""Quote source discovery for `finsight-feed plugin ...`.

Every module in plugins/market_data that defines a PLUGIN_META dict is a
quote source; nothing else needs registering.
"""

from __future__ import annotations

import importlib
import logging
import pkgutil
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

SOURCE_PACKAGE = "plugins.market_data"

# Families in display order
CATEGORY_ORDER = ["equities", "forex", "crypto"]

CATEGORY_LABELS = {
    "equities": "Equity & Index Sources",
    "forex": "Forex Sources",
    "crypto": "Crypto Sources",
}


@dataclass
class ConfigField:
    key: str
    label: str
    type: str = "string"  # secret | string | number | boolean
    required: bool = False
    default: Any = None
    env_var: str | None = None


@dataclass
class PluginInfo:
    """PLUGIN_META of one quote source module."""

    name: str
    display_name: str
    category: str
    module_path: str
    class_name: str = ""
    description: str = ""
    config_fields: list[ConfigField] = field(default_factory=list)

    @property
    def has_secrets(self) -> bool:
        return any(f.type == "secret" for f in self.config_fields)

    @classmethod
    def from_meta(cls, module_path: str, meta: dict) -> PluginInfo:
        fallback_name = module_path.rsplit(".", 1)[-1]
        fields = [
            ConfigField(
                key=raw["key"],
                label=raw.get("label", raw["key"]),
                type=raw.get("type", "string"),
                required=raw.get("required", False),
                default=raw.get("default"),
                env_var=raw.get("env_var"),
            )
            for raw in meta.get("config_fields", [])
        ]
        return cls(
            name=meta.get("name", fallback_name),
            display_name=meta.get("display_name", fallback_name),
            category=meta.get("category", "unknown"),
            module_path=module_path,
            class_name=meta.get("class_name", ""),
            description=meta.get("description", ""),
            config_fields=fields,
        )


def _source_modules(package: str) -> list[str]:
    pkg = importlib.import_module(package)
    return sorted(
        f"{package}.{info.name}"
        for info in pkgutil.iter_modules(pkg.__path__)
        if not info.name.startswith("_")
    )


def discover_plugins(package: str = SOURCE_PACKAGE) -> dict[str, list[PluginInfo]]:
    """Quote sources grouped by category, empty categories omitted."""
    grouped: dict[str, list[PluginInfo]] = {cat: [] for cat in CATEGORY_ORDER}

    for module_path in _source_modules(package):
        try:
            module = importlib.import_module(module_path)
        except ImportError:
            logger.debug("Skipping %s: import failed", module_path, exc_info=True)
            continue
        meta = getattr(module, "PLUGIN_META", None)
        if isinstance(meta, dict):
            info = PluginInfo.from_meta(module_path, meta)
            grouped.setdefault(info.category, []).append(info)

    return {cat: items for cat, items in grouped.items() if items}


def get_plugin(name: str, package: str = SOURCE_PACKAGE) -> PluginInfo | None:
    for items in discover_plugins(package).values():
        for info in items:
            if info.name == name:
                return info
    return None
