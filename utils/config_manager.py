from typing import Any, Dict


class ConfigManager:
    def __init__(self, config: Dict[str, Any]):
        self.config = config

    def get(self, key: str, default: Any = None) -> Any:
        return self.config.get(key, default)

    def section(self, name: str) -> Dict[str, Any]:
        return dict(self.config.get(name) or {})

    def get_db_path(self) -> str:
        return self.section("DATABASE").get("path") or "data/pipeline.db"

    def get_cache_backend(self) -> str:
        return str(self.section("CACHE").get("backend") or "memory").lower()

    def get_queue_interval(self) -> float:
        return float(self.section("SIGNALS").get("queue_interval", 30))

    def get_analysis_tick(self) -> float:
        return float(self.section("SIGNALS").get("analysis_tick", 10))

    def get_monitor_interval(self) -> float:
        return float(self.section("MONITOR").get("interval", 10))

    def get_expiry_interval(self) -> float:
        return float(self.section("CONFIRMATION").get("expiry_sweep_interval", 60))

    def get_cleanup_interval(self) -> float:
        return float(self.section("CACHE").get("cleanup_interval", 6 * 60 * 60))

    def get_signal_ttl(self) -> int:
        return int(self.section("SIGNALS").get("signal_ttl", 24 * 60 * 60))
