"""
Dependency injection container for LeadMiner components.
"""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from leadminer.config import Config, load_config
from leadminer.exceptions import ConfigurationError

if TYPE_CHECKING:
    from leadminer.classifier import Classifier
    from leadminer.dedup import FingerprintStore
    from leadminer.limits import BudgetGuard, RateLimiterRegistry
    from leadminer.monitoring import ClassificationMonitor
    from leadminer.pipeline import Pipeline
    from leadminer.review import ReviewBucket
    from leadminer.search import SerpSearchProvider
    from leadminer.storage import JsonlLeadSink, LeadLedger
    from leadminer.verification import RegistryVerifier

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management. Factories may be coroutines."""

    def __init__(self, factory: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def get(self) -> T:
        """Get or create the instance."""
        async with self._lock:
            if not self._initialized:
                instance = self._factory(*self._args, **self._kwargs)
                if inspect.isawaitable(instance):
                    instance = await instance
                if callable(getattr(instance, "initialize", None)):
                    await instance.initialize()
                self._instance = instance
                self._initialized = True
        return self._instance  # type: ignore[return-value]

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance is not None and callable(getattr(self._instance, "close", None)):
            result = self._instance.close()  # type: ignore[attr-defined]
            if inspect.isawaitable(result):
                await result
        self._instance = None
        self._initialized = False


class ConfigWatcher(FileSystemEventHandler):
    """Watches the configuration file and schedules a reload on change."""

    def __init__(self, container: DependencyContainer, loop: asyncio.AbstractEventLoop) -> None:
        self.container = container
        self.loop = loop
        self.logger = structlog.get_logger(self.__class__.__name__)

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory or self.container.config_path is None:
            return
        if Path(str(event.src_path)).resolve() != self.container.config_path.resolve():
            return
        self.logger.info("Configuration file changed, reloading", path=event.src_path)
        # Watchdog calls back from its own thread.
        asyncio.run_coroutine_threadsafe(self.container.reload_config(), self.loop)


class DependencyContainer:
    """
    Builds LeadMiner components lazily from one Config and owns their lifecycle.

    Components that hold connections (HTTP clients, the ledger) are closed on
    shutdown and rebuilt after a configuration reload.
    """

    def __init__(self, config_path: Optional[Path] = None, config: Optional[Config] = None, watch: bool = True) -> None:
        self.config_path = Path(config_path) if config_path else None
        self.config: Optional[Config] = config
        self.watch = watch
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._observer: Optional[Any] = None
        self._shutdown_handlers: List[Callable[[], Any]] = []
        self._reload_count = 0

        self.container_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        """Load configuration (unless given) and register lazy instances."""
        if self.config is None:
            await self.load_config()
        else:
            await self._create_instances()

        if self.watch:
            self._setup_config_watching()
        self.is_running = True

        self.logger.info(
            "Dependency container initialized",
            container_id=self.container_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    async def load_config(self) -> None:
        """Load or reload configuration. Raises ConfigurationError when invalid."""
        self.config = load_config(self.config_path)
        await self._create_instances()

    async def reload_config(self) -> None:
        """
        Hot-reload configuration and rebuild components.

        An invalid file leaves the current configuration and live components untouched.
        """
        old_config = self.config
        try:
            new_config = load_config(self.config_path)
        except ConfigurationError as e:
            self.logger.error("Configuration reload failed, keeping previous configuration", error=str(e))
            return
        self.config = new_config
        await self._create_instances()
        self._reload_count += 1
        self.logger.info(
            "Configuration reloaded",
            container_id=self.container_id,
            changes_detected=old_config != self.config,
        )

    def _require_config(self) -> Config:
        if self.config is None:
            raise ConfigurationError("Configuration must be loaded before building components")
        return self.config

    async def _create_instances(self) -> None:
        config = self._require_config()
        await self._cleanup_instances()

        from leadminer.limits import BudgetGuard, RateLimiterRegistry
        from leadminer.monitoring import ClassificationMonitor
        from leadminer.storage import JsonlLeadSink, LeadLedger

        self._instances = {
            "budget": LazyInstance(BudgetGuard, config.budget),
            "limiters": LazyInstance(RateLimiterRegistry.from_config, config.rate_limits),
            "ledger": LazyInstance(
                LeadLedger,
                config.storage.ledger_path,
                wal_mode=config.storage.wal_mode,
                tracking_params=config.dedup.tracking_params,
            ),
            "embedder": LazyInstance(self._build_embedder),
            "store": LazyInstance(self._build_store),
            "text_classifier": LazyInstance(self._build_text_classifier),
            "classifier": LazyInstance(self._build_classifier),
            "registry": LazyInstance(self._build_registry),
            "verifier": LazyInstance(self._build_verifier),
            "search": LazyInstance(self._build_search),
            "review": LazyInstance(self._build_review),
            "output_sink": LazyInstance(JsonlLeadSink, config.storage.leads_path),
            "monitor": LazyInstance(ClassificationMonitor, config.monitor),
            "pipeline": LazyInstance(self._build_pipeline),
        }

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    async def _build_embedder(self) -> Any:
        from leadminer.classifier import OpenAIEmbedder
        from leadminer.dedup import HashingEmbedder

        config = self._require_config()
        if config.dedup.embedder == "openai":
            limiters = await self.get_limiters()
            return OpenAIEmbedder(
                config.dedup,
                config.classifier,
                limiter=limiters.get("embedder"),
                budget=await self.get_budget(),
            )
        return HashingEmbedder(dim=config.dedup.embedding_dim)

    async def _build_store(self) -> FingerprintStore:
        from leadminer.dedup import FingerprintStore

        config = self._require_config()
        store = FingerprintStore(await self.get_embedder(), config.dedup)
        ledger = await self.get_ledger()
        store.preload(await ledger.load_fingerprints())
        return store

    async def _build_text_classifier(self) -> Any:
        from leadminer.classifier import OpenAIClassifier

        config = self._require_config()
        return OpenAIClassifier(config.classifier)

    async def _build_classifier(self) -> Classifier:
        from leadminer.cache import TTLCache
        from leadminer.classifier import Classifier, EventDateFilter

        config = self._require_config()
        limiters = await self.get_limiters()
        return Classifier(
            await self._get("text_classifier"),
            config.classifier,
            cache=TTLCache.from_config(config.cache, name="classification"),
            limiter=limiters.get("classifier"),
            budget=await self.get_budget(),
            date_filter=EventDateFilter.from_window(config.search.date_window),
        )

    async def _build_registry(self) -> Any:
        from leadminer.verification import ProPublicaVerifier

        config = self._require_config()
        return ProPublicaVerifier(config.verification)

    async def _build_verifier(self) -> RegistryVerifier:
        from leadminer.cache import TTLCache
        from leadminer.verification import RegistryVerifier

        config = self._require_config()
        limiters = await self.get_limiters()
        return RegistryVerifier(
            await self._get("registry"),
            cache=TTLCache.from_config(
                config.cache, name="verification", ttl_seconds=config.cache.verification_ttl_seconds
            ),
            limiter=limiters.get("verifier"),
        )

    async def _build_search(self) -> SerpSearchProvider:
        from leadminer.search import SerpSearchProvider

        config = self._require_config()
        limiters = await self.get_limiters()
        return SerpSearchProvider(config.search, limiter=limiters.get("search"), budget=await self.get_budget())

    async def _build_review(self) -> ReviewBucket:
        from leadminer.review import ReviewBucket
        from leadminer.storage import JsonlReviewSink

        config = self._require_config()
        return ReviewBucket(JsonlReviewSink(config.storage.review_path), config.classifier)

    async def _build_pipeline(self) -> Pipeline:
        from leadminer.pipeline import Pipeline

        config = self._require_config()
        return Pipeline(
            store=await self.get_store(),
            classifier=await self.get_classifier(),
            config=config,
            ledger=await self.get_ledger(),
            verifier=await self.get_verifier() if config.verification.enabled else None,
            review=await self.get_review(),
            output_sink=await self._get("output_sink"),
            monitor=await self.get_monitor(),
            search_provider=await self.get_search(),
            budget=await self.get_budget(),
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    async def _get(self, name: str) -> Any:
        if name not in self._instances:
            raise RuntimeError(f"Container not initialized or unknown component: {name}")
        return await self._instances[name].get()

    async def get_budget(self) -> BudgetGuard:
        return await self._get("budget")

    async def get_limiters(self) -> RateLimiterRegistry:
        return await self._get("limiters")

    async def get_ledger(self) -> LeadLedger:
        return await self._get("ledger")

    async def get_embedder(self) -> Any:
        return await self._get("embedder")

    async def get_store(self) -> FingerprintStore:
        return await self._get("store")

    async def get_classifier(self) -> Classifier:
        return await self._get("classifier")

    async def get_verifier(self) -> RegistryVerifier:
        return await self._get("verifier")

    async def get_search(self) -> SerpSearchProvider:
        return await self._get("search")

    async def get_review(self) -> ReviewBucket:
        return await self._get("review")

    async def get_output_sink(self) -> JsonlLeadSink:
        return await self._get("output_sink")

    async def get_monitor(self) -> ClassificationMonitor:
        return await self._get("monitor")

    async def get_pipeline(self) -> Pipeline:
        return await self._get("pipeline")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Graceful shutdown of all managed instances."""
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container", container_id=self.container_id)

        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None

        for handler in self._shutdown_handlers:
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        await self._cleanup_instances()

        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    def _setup_config_watching(self) -> None:
        if not self.config_path or not self.config_path.exists():
            return
        self._observer = Observer()
        handler = ConfigWatcher(self, asyncio.get_running_loop())
        self._observer.schedule(handler, str(self.config_path.parent), recursive=False)
        self._observer.start()

    async def _cleanup_instances(self) -> None:
        # Dependents first, so nothing uses a client after it is closed.
        for name in reversed(list(self._instances)):
            try:
                await self._instances[name].cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up component", component=name, error=str(e))

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        self._shutdown_handlers.append(handler)

    def get_health_status(self) -> Dict[str, Any]:
        """Health status of the container and its components."""
        return {
            "container_id": self.container_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "config_path": str(self.config_path) if self.config_path else None,
            "reload_count": self._reload_count,
            "instances_count": len(self._instances),
            "initialized": sorted(name for name, inst in self._instances.items() if inst.initialized),
        }
