from .stats_service import StatsService, gather_all

__all__ = ["StatsService", "gather_all"]
