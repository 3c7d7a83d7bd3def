"""Dependency injection container for the orchestration engine.
Lightweight wiring of core services at application startup.
Uses lazy initialization: services are created on first access.
"""

import logging
from typing import Any, Dict, Optional

from facet_core.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class FacetContainer:
    """Central service container.

    ``redis_client`` (a redis-py style client) backs the shared cache tier
    when given; otherwise an in-process store is used.  ``task_body``
    overrides the body chosen from settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        redis_client: Any = None,
        task_body: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._redis_client = redis_client
        self._task_body = task_body
        self._scorer = None
        self._planner = None
        self._cache = None
        self._monitor = None
        self._text_generator = None
        self._scheduler = None
        self._synthesizer = None
        self._engine = None

    @property
    def scorer(self):
        if self._scorer is None:
            from facet_core.risk.scorer import RiskScorer
            self._scorer = RiskScorer()
            logger.info("RiskScorer initialized")
        return self._scorer

    @property
    def planner(self):
        if self._planner is None:
            from facet_core.planning.planner import ExecutionPlanner
            self._planner = ExecutionPlanner(self.scorer, self.settings)
        return self._planner

    @property
    def cache(self):
        if self._cache is None:
            from facet_core.caching.hierarchy import CacheHierarchy
            from facet_core.caching.shared_store import InMemorySharedStore, RedisSharedStore
            if self._redis_client is not None:
                store = RedisSharedStore(self._redis_client, prefix=self.settings.cache_key_prefix)
            else:
                store = InMemorySharedStore()
            self._cache = CacheHierarchy(self.settings, shared_store=store)
            logger.info("CacheHierarchy initialized (shared=%s)", type(store).__name__)
        return self._cache

    @property
    def monitor(self):
        if self._monitor is None:
            from facet_core.monitoring.sla_monitor import SLAMonitor
            self._monitor = SLAMonitor(self.settings)
        return self._monitor

    @property
    def text_generator(self):
        """``None`` unless a text-generation URL is configured."""
        if self._text_generator is None and self.settings.text_generation_url:
            from facet_core.exceptions import CircuitBreaker, CircuitBreakerConfig
            from facet_core.llm.text_generation import HTTPTextGenerator
            self._text_generator = HTTPTextGenerator(
                base_url=self.settings.text_generation_url,
                model=self.settings.text_generation_model,
                api_key=self.settings.text_generation_api_key,
                timeout=self.settings.text_generation_timeout,
                breaker=CircuitBreaker("text-generation", CircuitBreakerConfig(
                    failure_threshold=self.settings.circuit_breaker_failure_threshold,
                    recovery_timeout_sec=self.settings.circuit_breaker_timeout,
                    success_threshold=self.settings.circuit_breaker_success_threshold,
                )),
            )
            logger.info("HTTPTextGenerator initialized (%s)", self.settings.text_generation_url)
        return self._text_generator

    @property
    def task_body(self):
        if self._task_body is None:
            from facet_core.tasks.bodies import KeywordTaskBody, TextGenerationTaskBody
            generator = self.text_generator
            if generator is not None:
                self._task_body = TextGenerationTaskBody(
                    generator,
                    max_tokens=self.settings.text_generation_max_tokens,
                    temperature=self.settings.text_generation_temperature,
                )
            else:
                self._task_body = KeywordTaskBody()
            logger.info("Task body: %s", type(self._task_body).__name__)
        return self._task_body

    @property
    def scheduler(self):
        if self._scheduler is None:
            from facet_core.orchestration.scheduler import TaskScheduler
            self._scheduler = TaskScheduler(self.task_body, self.cache, self.monitor, self.settings)
        return self._scheduler

    @property
    def synthesizer(self):
        if self._synthesizer is None:
            from facet_core.orchestration.synthesizer import ResponseSynthesizer
            self._synthesizer = ResponseSynthesizer()
        return self._synthesizer

    @property
    def engine(self):
        if self._engine is None:
            from facet_core.orchestration.engine import OrchestrationEngine
            self._engine = OrchestrationEngine(
                scorer=self.scorer,
                planner=self.planner,
                scheduler=self.scheduler,
                synthesizer=self.synthesizer,
                cache=self.cache,
                monitor=self.monitor,
                settings=self.settings,
            )
            logger.info("OrchestrationEngine initialized")
        return self._engine

    async def aclose(self) -> None:
        """Let background work settle and release network sessions."""
        if self._scheduler is not None:
            await self._scheduler.drain(timeout=5.0)
        if self._text_generator is not None:
            await self._text_generator.close()

    def status(self) -> Dict[str, Any]:
        """Report which services are initialized."""
        return {
            "scorer": self._scorer is not None,
            "planner": self._planner is not None,
            "cache": self._cache is not None,
            "monitor": self._monitor is not None,
            "text_generator": self._text_generator is not None,
            "task_body": self._task_body is not None,
            "scheduler": self._scheduler is not None,
            "synthesizer": self._synthesizer is not None,
            "engine": self._engine is not None,
        }


# Global container
_container: Optional[FacetContainer] = None


def get_container() -> FacetContainer:
    global _container
    if _container is None:
        _container = FacetContainer()
    return _container


def init_container(container: Optional[FacetContainer] = None) -> FacetContainer:
    """Install *container* (or a default one) as the global container."""
    global _container
    _container = container or FacetContainer()
    return _container


async def shutdown_container() -> None:
    global _container
    if _container is not None:
        await _container.aclose()
    _container = None
