"""
MLM ranks configuration and constants.
Default table lives here; an optional RANK_CONFIG JSON override is merged
in from Config.
"""
from enum import Enum
from decimal import Decimal
from typing import Dict, Any, List
import logging

logger = logging.getLogger(__name__)


class Rank(Enum):
    """MLM rank enumeration, lowest first."""
    DISTRIBUTOR = "distributor"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"
    PRESIDENTIAL = "presidential"


# Monthly thresholds. qualifiedLegs: direct legs holding at least that rank.
DEFAULT_RANK_TABLE: Dict[str, Dict[str, Any]] = {
    "distributor": {
        "displayName": "Distributor",
        "level": 0,
        "bonus": "0",
        "personalSales": "0",
        "activeLegs": 0,
        "teamVolume": "0",
        "qualifiedLegs": {},
    },
    "bronze": {
        "displayName": "Bronze",
        "level": 1,
        "bonus": "100",
        "personalSales": "500",
        "activeLegs": 3,
        "teamVolume": "0",
        "qualifiedLegs": {},
    },
    "silver": {
        "displayName": "Silver",
        "level": 2,
        "bonus": "500",
        "personalSales": "2000",
        "activeLegs": 5,
        "teamVolume": "5000",
        "qualifiedLegs": {},
    },
    "gold": {
        "displayName": "Gold",
        "level": 3,
        "bonus": "2000",
        "personalSales": "5000",
        "activeLegs": 5,
        "teamVolume": "20000",
        "qualifiedLegs": {},
    },
    "platinum": {
        "displayName": "Platinum",
        "level": 4,
        "bonus": "10000",
        "personalSales": "10000",
        "activeLegs": 5,
        "teamVolume": "50000",
        "qualifiedLegs": {"gold": 2},
    },
    "diamond": {
        "displayName": "Diamond",
        "level": 5,
        "bonus": "50000",
        "personalSales": "20000",
        "activeLegs": 5,
        "teamVolume": "100000",
        "qualifiedLegs": {"platinum": 3},
    },
    "presidential": {
        "displayName": "Presidential",
        "level": 6,
        "bonus": "100000",
        "personalSales": "50000",
        "activeLegs": 5,
        "teamVolume": "250000",
        "qualifiedLegs": {"diamond": 5},
    },
}


def get_rank_config() -> Dict[Rank, Dict[str, Any]]:
    """
    Build rank configuration from the default table and Config override.

    Returns:
        Dictionary mapping Rank enum to configuration dict

    Raises:
        ValueError: If an override names an unknown rank or is malformed
    """
    from config import Config

    raw_config = {key: dict(value) for key, value in DEFAULT_RANK_TABLE.items()}

    override = Config.get(Config.RANK_CONFIG)
    if override:
        for rank_key, rank_data in override.items():
            if rank_key not in raw_config:
                raise ValueError(f"Unknown rank '{rank_key}' in RANK_CONFIG")
            raw_config[rank_key].update(rank_data)
        logger.info(f"Applied RANK_CONFIG override for: {', '.join(override.keys())}")

    rank_config = {}

    for rank_key, rank_data in raw_config.items():
        try:
            rank_enum = Rank(rank_key)

            rank_config[rank_enum] = {
                "displayName": rank_data["displayName"],
                "level": int(rank_data["level"]),
                "bonus": Decimal(str(rank_data["bonus"])),
                "personalSales": Decimal(str(rank_data["personalSales"])),
                "activeLegs": int(rank_data["activeLegs"]),
                "teamVolume": Decimal(str(rank_data["teamVolume"])),
                "qualifiedLegs": {
                    Rank(required): int(count)
                    for required, count in rank_data.get("qualifiedLegs", {}).items()
                },
            }

        except (ValueError, KeyError) as e:
            logger.error(f"Invalid rank configuration for '{rank_key}': {e}")
            raise ValueError(f"Invalid rank configuration for '{rank_key}': {e}")

    return rank_config


# Lazy-loaded configuration cache
_RANK_CONFIG_CACHE: Dict[Rank, Dict[str, Any]] = {}


def get_rank_config_cached() -> Dict[Rank, Dict[str, Any]]:
    """
    Get rank configuration with caching.
    Loads from Config on first access, then returns cached version.

    Returns:
        Rank configuration dictionary
    """
    global _RANK_CONFIG_CACHE

    if not _RANK_CONFIG_CACHE:
        _RANK_CONFIG_CACHE = get_rank_config()
        logger.info(f"Loaded RANK_CONFIG: {len(_RANK_CONFIG_CACHE)} ranks")

    return _RANK_CONFIG_CACHE


def reset_rank_config_cache() -> None:
    """Forget cached configuration so the next access reloads it."""
    global _RANK_CONFIG_CACHE
    _RANK_CONFIG_CACHE = {}


# Public accessor - use this everywhere instead of the default table
def RANK_CONFIG():
    """Get current rank configuration."""
    return get_rank_config_cached()


def rank_level(rank) -> int:
    """Ordinal level for a Rank or rank id; unknown ids count as distributor."""
    try:
        rank_enum = rank if isinstance(rank, Rank) else Rank((rank or "distributor").lower())
    except ValueError:
        logger.warning(f"Unknown rank '{rank}', treating as distributor")
        return 0
    return RANK_CONFIG()[rank_enum]["level"]


def ranks_descending() -> List[Rank]:
    """All ranks ordered highest level first."""
    return sorted(RANK_CONFIG().keys(), key=lambda r: RANK_CONFIG()[r]["level"], reverse=True)


def next_rank(rank: Rank):
    """Rank one level above, or None at the top."""
    level = RANK_CONFIG()[rank]["level"]
    for candidate in reversed(ranks_descending()):
        if RANK_CONFIG()[candidate]["level"] == level + 1:
            return candidate
    return None
