"""Dependency injection container for the shortlisting engine."""

from __future__ import annotations

from typing import Any

from dependency_injector import containers, providers

from .adapters import ElasticsearchUserIndex, HttpLmsClient, HttpNotifier
from .core import BatchRunner, CohortScanner, FieldValueResolver, MemberStatusUpdater
from .failures import FailureLog
from .pipeline import RejectionEmailOrchestrator, ShortlistingOrchestrator
from .schemas import EngineSettings
from .stores import SqlCohortStore


class EngineContainer(containers.DeclarativeContainer):
    """Dependency-injector container definition."""

    settings = providers.Dependency(instance_of=EngineSettings)

    store = providers.Singleton(SqlCohortStore, database_url=settings.provided.database_url)

    lms_client = providers.Singleton(HttpLmsClient, settings=settings.provided.lms)
    search_index = providers.Singleton(
        ElasticsearchUserIndex,
        settings=settings.provided.search_index,
    )
    notifier = providers.Singleton(HttpNotifier, settings=settings.provided.notification)

    failure_log = providers.Singleton(FailureLog, path=settings.provided.failure_log_path)

    scanner = providers.Singleton(
        CohortScanner,
        store=store,
        form_context_type=settings.provided.form_context_type,
        backlog_limit=settings.provided.backlog_limit,
        timezone=settings.provided.timezone,
    )
    resolver = providers.Singleton(FieldValueResolver, store=store)

    updater = providers.Singleton(
        MemberStatusUpdater,
        store=store,
        settings=settings,
        lms=lms_client,
        search_index=search_index,
        notifier=notifier,
        failure_log=failure_log,
    )

    runner = providers.Factory(
        BatchRunner,
        batch_size=settings.provided.batch_size,
        max_concurrency=settings.provided.max_concurrent_batches,
        slow_batch_seconds=settings.provided.slow_batch_seconds,
        progress_every_groups=settings.provided.progress_every_groups,
    )

    shortlisting = providers.Factory(
        ShortlistingOrchestrator,
        settings=settings,
        scanner=scanner,
        resolver=resolver,
        updater=updater,
        lms=lms_client,
        runner=runner,
        failure_log=failure_log,
    )

    rejection_emails = providers.Factory(
        RejectionEmailOrchestrator,
        settings=settings,
        scanner=scanner,
        store=store,
        updater=updater,
        runner=runner,
        failure_log=failure_log,
    )


def create_container(
    *,
    settings: EngineSettings,
    store: Any | None = None,
    lms: Any | None = None,
    search_index: Any | None = None,
    notifier: Any | None = None,
    failure_log: FailureLog | None = None,
) -> EngineContainer:
    """Instantiate the container with settings and optional collaborator overrides."""

    container = EngineContainer()
    container.settings.override(providers.Object(settings))

    if store is not None:
        container.store.override(providers.Object(store))
    if lms is not None:
        container.lms_client.override(providers.Object(lms))
    if search_index is not None:
        container.search_index.override(providers.Object(search_index))
    if notifier is not None:
        container.notifier.override(providers.Object(notifier))
    if failure_log is not None:
        container.failure_log.override(providers.Object(failure_log))

    return container


async def close_container(container: EngineContainer) -> None:
    """Close HTTP clients and dispose the database engine."""
    for provider in (container.lms_client, container.search_index, container.notifier):
        close = getattr(provider(), "aclose", None)
        if close is not None:
            await close()
    dispose = getattr(container.store(), "dispose", None)
    if dispose is not None:
        dispose()
