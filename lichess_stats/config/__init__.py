from .stats_config import StatsConfig, config

__all__ = ["StatsConfig", "config"]
