"""Built-in gateway catalogue models and YAML loader.

Provides typed Pydantic models for gateway descriptors and a loader function
that parses the bundled YAML catalogue into those models.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class GatewayDescriptor(BaseModel):
    """Identity of a single gateway as exchanged with collaborators."""

    name: str = Field(min_length=1, max_length=60)
    url: str = Field(min_length=1)
    region: str = "AUTO"
    priority: int = Field(default=50, ge=0)
    icon: str = "🌐"

    @field_validator("region")
    @classmethod
    def _upper_region(cls, value: str) -> str:
        value = (value or "AUTO").upper()
        return value if value in {"CN", "INTL", "AUTO"} else "AUTO"


_FALLBACK_GATEWAYS = [
    GatewayDescriptor(name="IPFS.io", url="https://ipfs.io/ipfs/", region="INTL", priority=1),
    GatewayDescriptor(name="DWeb Link", url="https://dweb.link/ipfs/", region="INTL", priority=2),
    GatewayDescriptor(name="4EVERLAND", url="https://4everland.io/ipfs/", region="CN", priority=3),
]


def load_default_gateways(yaml_path: str) -> list[GatewayDescriptor]:
    """Parse the gateway catalogue YAML file into GatewayDescriptor objects.

    Args:
        yaml_path: Path to the YAML catalogue.

    Returns:
        The descriptors in file order. If the file is missing or unparsable,
        returns a small built-in fallback list.
    """
    path = Path(yaml_path)

    if not path.exists():
        logger.warning("Gateway catalogue not found at %s, using built-in fallback", yaml_path)
        return list(_FALLBACK_GATEWAYS)

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        logger.error("Failed to parse gateway catalogue YAML at %s: %s", yaml_path, exc)
        return list(_FALLBACK_GATEWAYS)

    if not isinstance(raw, dict) or not isinstance(raw.get("gateways"), list):
        logger.warning("Gateway catalogue YAML missing 'gateways' list, using built-in fallback")
        return list(_FALLBACK_GATEWAYS)

    descriptors: list[GatewayDescriptor] = []
    for index, entry in enumerate(raw["gateways"]):
        try:
            descriptors.append(GatewayDescriptor.model_validate(entry))
        except Exception as exc:
            logger.error("Invalid gateway entry #%d: %s, skipping", index, exc)

    if not descriptors:
        return list(_FALLBACK_GATEWAYS)

    return descriptors
