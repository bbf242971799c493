"""
Service wiring.

Builds every store and processor from settings around one shared
RedisClient. The API and the worker each hold one container.
"""

from dataclasses import dataclass
from typing import Optional

from shiplog.services.commit_log import BranchCommitLog
from shiplog.services.delivery import DeliverySink, create_delivery_sink
from shiplog.services.digest import DigestProcessor
from shiplog.services.github_client import GitHubClient
from shiplog.services.ingest import RegistryIngest
from shiplog.services.pr_registry import PRRegistry
from shiplog.services.redis_client import RedisClient, get_redis_client
from shiplog.services.reporter import ReportProcessor
from shiplog.services.resolution import ResolutionEngine
from shiplog.services.summarizer import LLMClient, SummarizationService


@dataclass
class ServiceContainer:
    redis: RedisClient
    commit_log: BranchCommitLog
    registry: PRRegistry
    resolution: ResolutionEngine
    ingest: RegistryIngest
    github: GitHubClient
    summarizer: SummarizationService
    sink: DeliverySink
    digest: DigestProcessor
    reporter: ReportProcessor

    @classmethod
    def build(
        cls,
        settings=None,
        redis_client: Optional[RedisClient] = None,
        github: Optional[GitHubClient] = None,
        summarizer: Optional[SummarizationService] = None,
        sink: Optional[DeliverySink] = None,
    ) -> "ServiceContainer":
        """
        Wire the services. Any collaborator passed in replaces the default.
        """
        if settings is None:
            from shiplog.config import settings

        redis_client = redis_client or get_redis_client()
        commit_log = BranchCommitLog(redis_client, settings)
        registry = PRRegistry(redis_client, settings)
        resolution = ResolutionEngine(commit_log, registry)
        github = github or GitHubClient.from_settings(settings)
        summarizer = summarizer or SummarizationService(
            LLMClient(settings), project_context=settings.project_context
        )
        sink = sink or create_delivery_sink(settings)

        return cls(
            redis=redis_client,
            commit_log=commit_log,
            registry=registry,
            resolution=resolution,
            ingest=RegistryIngest(registry, settings),
            github=github,
            summarizer=summarizer,
            sink=sink,
            digest=DigestProcessor(commit_log, registry, github, summarizer, settings),
            reporter=ReportProcessor(
                redis_client, resolution, registry, commit_log, summarizer, sink, settings
            ),
        )

    async def close(self) -> None:
        await self.github.close()
        await self.sink.close()
        await self.redis.close()


_container: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    """Get or create the process-wide service container."""
    global _container
    if _container is None:
        _container = ServiceContainer.build()
    return _container


def reset_container() -> None:
    global _container
    _container = None
