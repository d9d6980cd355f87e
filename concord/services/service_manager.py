"""
🔧 Service Manager - Central Service Coordination
===============================================

Builds the collaborators (presence, actuator), the shared scheduler and one
engine plus ``QueueService`` per configured feature, and hands them to the
Flask application.
"""

import logging
import time
from typing import Any, Dict, Optional, Union

import psutil

from ..api.actuator import HttpActuator, InMemoryActuator, NullActuator
from ..api.presence import HttpPresenceProvider, InMemoryPresence
from ..config_schema import ConcordConfig, FeatureConfig
from ..core.engine import FeatureEngine
from ..core.errors import NotFound
from ..core.scheduler import SchedulerLoop
from ..utils.rate_limiting import get_rate_limiter
from ..version import get_app_info
from . import ServiceResult
from .queue_service import QueueService


class ServiceManager:
    """Central manager for all application services."""

    def __init__(
        self,
        config: Union[ConcordConfig, Dict[str, Any]],
        *,
        presence=None,
        actuator=None,
        scheduler: Optional[SchedulerLoop] = None,
        config_store=None,
    ):
        self.logger = logging.getLogger("concord.service_manager")
        self.config = config if isinstance(config, ConcordConfig) else ConcordConfig(**config)
        self.started_at = time.time()
        self._config_store = config_store

        self.presence = presence or self._build_presence()
        self.actuator = actuator or self._build_actuator()
        sched_cfg = self.config.scheduler
        self.scheduler = scheduler or SchedulerLoop(
            tick_seconds=sched_cfg.tick_seconds,
            actuation_timeout=sched_cfg.actuation_timeout,
            max_workers=sched_cfg.max_workers,
        )

        self.engines: Dict[str, FeatureEngine] = {}
        self.services: Dict[str, QueueService] = {}
        for feature_id, feature_cfg in self.config.features.items():
            engine = FeatureEngine(feature_id, feature_cfg, self.presence, self.actuator, self.scheduler)
            self.engines[feature_id] = engine
            self.services[feature_id] = QueueService(engine, settings_listener=self._on_settings_changed)

        if hasattr(self.presence, "add_listener"):
            self.presence.add_listener(self.on_presence_changed)

        self._initialize_all()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    def _build_presence(self):
        cfg = self.config.presence
        if cfg.url:
            self.logger.info(f"👥 Using presence service at {cfg.url}")
            return HttpPresenceProvider(cfg.url, cache_seconds=cfg.cache_seconds)
        self.logger.info("👥 Using in-memory presence registry")
        return InMemoryPresence()

    def _build_actuator(self):
        cfg = self.config.actuator
        if cfg.url:
            self.logger.info(f"🎛️ Using device bridge at {cfg.url}")
            return HttpActuator(cfg.url, token=cfg.token)
        if self.config.environment == "development":
            return InMemoryActuator()
        return NullActuator()

    def _initialize_all(self) -> None:
        self.logger.info("🚀 Initializing service manager...")
        for name, service in self.services.items():
            result = service.initialize()
            if not result.success:
                self.logger.error(f"❌ {name} service initialization failed: {result.message}")
        self.logger.info(f"🎯 Service manager ready with features: {', '.join(self.services) or 'none'}")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def get_service(self, name: str) -> Optional[QueueService]:
        return self.services.get(name)

    def get_queue_service(self, feature_id: str) -> QueueService:
        service = self.services.get(feature_id)
        if service is None:
            raise NotFound(f"Unknown feature: {feature_id}")
        return service

    def get_engine(self, feature_id: str) -> FeatureEngine:
        return self.get_queue_service(feature_id).engine

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def on_presence_changed(self) -> Dict[str, int]:
        """Re-evaluate every feature after check-ins changed."""
        if hasattr(self.presence, "invalidate"):
            self.presence.invalidate()
        fired = {}
        for feature_id, engine in self.engines.items():
            fired[feature_id] = len(engine.on_presence_changed())
        self.scheduler.wake()
        return fired

    def _on_settings_changed(self, feature_id: str, settings: FeatureConfig) -> None:
        self.scheduler.wake()
        if not self.config.persist_settings or self._config_store is None:
            return
        config = self._config_store.load_config(use_cache=False)
        config.setdefault("features", {})[feature_id] = settings.to_dict()
        if not self._config_store.save_config(config, notify_listeners=False):
            self.logger.warning(f"⚠️ Settings for {feature_id} applied but not persisted")

    # ------------------------------------------------------------------
    # Lifecycle & diagnostics
    # ------------------------------------------------------------------
    def start(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.stop()

    def health_check_all(self) -> ServiceResult:
        """Perform health check on all services."""
        results = {}
        overall_healthy = True
        for name, service in self.services.items():
            health = service.health_check()
            status_payload = health.data if health.success else {"status": "error", "error": health.message}
            healthy = health.success and status_payload.get("status") == "healthy"
            results[name] = {"healthy": healthy, "status": status_payload}
            overall_healthy = overall_healthy and healthy

        return ServiceResult(
            success=True,
            data={
                "overall_healthy": overall_healthy,
                "services": results,
                "total_services": len(self.services),
                "healthy_services": sum(1 for r in results.values() if r["healthy"]),
                "scheduler_running": self.scheduler.is_running(),
            },
            message="Health check completed for all services",
        )

    def get_status(self) -> ServiceResult:
        """Application status: version, process resources, scheduler and presence."""
        process = psutil.Process()
        memory = process.memory_info()
        return ServiceResult(
            success=True,
            data={
                "app": get_app_info(),
                "environment": self.config.environment,
                "uptime_seconds": round(time.time() - self.started_at, 1),
                "process": {
                    "memory_mb": round(memory.rss / (1024 ** 2), 1),
                    "threads": process.num_threads(),
                },
                "presence": {"present_count": self.presence.current_count()},
                "scheduler": self.scheduler.status(),
                "features": {fid: engine.mode for fid, engine in self.engines.items()},
                "rate_limiting": {"enabled": get_rate_limiter().enabled},
            },
        )


_service_manager: Optional[ServiceManager] = None


def init_service_manager(config: Union[ConcordConfig, Dict[str, Any]], **kwargs: Any) -> ServiceManager:
    """Create (or replace) the global service manager."""
    global _service_manager
    if _service_manager is not None:
        _service_manager.shutdown()
    _service_manager = ServiceManager(config, **kwargs)
    return _service_manager


def get_service_manager() -> ServiceManager:
    """Get the global service manager instance."""
    global _service_manager
    if _service_manager is None:
        from ..config import get_config_manager
        store = get_config_manager()
        _service_manager = ServiceManager(store.load_config(), config_store=store)
    return _service_manager


def get_service(name: str) -> Optional[QueueService]:
    return get_service_manager().get_service(name)


def set_service_manager(manager: Optional[ServiceManager]) -> None:
    """Install an externally built manager (app factory, tests)."""
    global _service_manager
    _service_manager = manager
