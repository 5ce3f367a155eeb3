"""
Sync engine for pulling CRM case data into the local store.

Orchestrates one sync run per entity type:
- Chooses incremental or full strategy from the audit log
- Pages through the CRM collection in order
- Reconciles each record by external id (or a secondary name match),
  maps it and upserts it
- Tolerates per-record failures and records everything in a SyncRun
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from crm_sync.api.crm_api import CRMClient, FetchError
from crm_sync.auth.token_manager import AuthenticationRequired, TokenRefreshError
from crm_sync.storage.db import StoreError, SyncDatabase, UpsertConflictError
from crm_sync.sync.mapper import FieldMapper, MappingError
from crm_sync.sync.mapping import EntityType
from crm_sync.sync.matcher import NameMatcher

logger = logging.getLogger(__name__)

# Errors kept inline on a run; the full list is in the run details
MAX_RUN_ERRORS = 200

# Failures that end a run (everything else is handled per record)
RUN_LEVEL_ERRORS = (AuthenticationRequired, TokenRefreshError, FetchError, StoreError)


class SyncStrategy(Enum):
    """How much of a collection a run considers."""

    INCREMENTAL = "incremental"
    FULL = "full"


class SyncRunStatus(Enum):
    """Lifecycle state of a sync run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncInProgressError(Exception):
    """Raised when a run is requested for an entity type that is already syncing."""

    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class SyncRun:
    """
    Audit record of one sync invocation.

    Created at run start, updated at each page boundary and finalized when
    the run completes, fails or is cancelled.
    """

    sync_type: EntityType
    strategy: SyncStrategy
    status: SyncRunStatus = SyncRunStatus.RUNNING
    started_at: datetime = field(default_factory=_utc_now)
    completed_at: Optional[datetime] = None
    modified_since: Optional[datetime] = None
    pages_fetched: int = 0
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    errors: list[str] = field(default_factory=list)
    error_message: Optional[str] = None
    triggered_by: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_finished(self) -> bool:
        return self.status is not SyncRunStatus.RUNNING

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_RUN_ERRORS:
            self.errors.append(message)
        elif len(self.errors) == MAX_RUN_ERRORS:
            self.errors.append("... further errors recorded in run details only")

    def to_dict(self) -> dict[str, Any]:
        """Row dictionary for the audit log."""
        return {
            "id": self.id,
            "sync_type": self.sync_type.value,
            "strategy": self.strategy.value,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "modified_since": _iso(self.modified_since),
            "pages_fetched": self.pages_fetched,
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "records_failed": self.records_failed,
            "errors": list(self.errors),
            "error_message": self.error_message,
            "triggered_by": self.triggered_by,
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "SyncRun":
        """Rebuild a run from an audit log row."""
        return cls(
            id=row.get("id"),
            sync_type=EntityType.parse(row["sync_type"]),
            strategy=SyncStrategy(row["strategy"]),
            status=SyncRunStatus(row["status"]),
            started_at=_parse_timestamp(row["started_at"]) or _utc_now(),
            completed_at=_parse_timestamp(row.get("completed_at")),
            modified_since=_parse_timestamp(row.get("modified_since")),
            pages_fetched=row.get("pages_fetched") or 0,
            records_processed=row.get("records_processed") or 0,
            records_created=row.get("records_created") or 0,
            records_updated=row.get("records_updated") or 0,
            records_failed=row.get("records_failed") or 0,
            errors=list(row.get("errors") or []),
            error_message=row.get("error_message"),
            triggered_by=row.get("triggered_by"),
        )

    def summary(self) -> str:
        """One-line human-readable summary."""
        text = (
            f"{self.sync_type.value} {self.strategy.value} sync {self.status.value}: "
            f"{self.records_processed} processed, {self.records_created} created, "
            f"{self.records_updated} updated, {self.records_failed} failed "
            f"({self.pages_fetched} pages)"
        )
        if self.error_message:
            text += f" - {self.error_message}"
        return text


class SyncEngine:
    """
    CRM to local store sync engine.

    One run processes one entity type sequentially in CRM page order.
    Different entity types may run concurrently (run_many), each with its
    own SyncRun; two runs of the same entity type never overlap.

    Usage:
        engine = SyncEngine(
            database=SyncDatabase('/path/to/sync.db'),
            client=CRMClient(token_manager),
        )

        # One entity type
        run = engine.run_sync(EntityType.MATTERS, "incremental")
        print(run.summary())

        # All entity types in parallel
        runs = engine.run_many(strategy="full")
    """

    def __init__(
        self,
        database: SyncDatabase,
        client: CRMClient,
        mapper: Optional[FieldMapper] = None,
        matcher: Optional[NameMatcher] = None,
        secondary_match: bool = True,
        page_size: Optional[int] = None,
    ):
        """
        Initialize the sync engine.

        Args:
            database: Store for entities, credentials and the audit log
            client: CRM client used to fetch pages
            mapper: Field mapper; defaults to the built-in mapping tables
            matcher: Secondary name matcher; created from the database when
                secondary_match is True and none is given
            secondary_match: Whether to link records to unlinked rows by name
            page_size: Records per page (client default when None)
        """
        self.database = database
        self.client = client
        self.mapper = mapper or FieldMapper()
        if matcher is None and secondary_match:
            matcher = NameMatcher(database)
        self.matcher = matcher if secondary_match else None
        self.page_size = page_size

        self.last_runs: dict[EntityType, SyncRun] = {}
        self._type_locks = {et: threading.Lock() for et in EntityType}

        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Make sure every mapped column exists in the entity tables."""
        for entity_type in EntityType:
            columns = {
                name: column_type.sql_type
                for name, column_type in self.mapper.columns(entity_type).items()
            }
            added = self.database.ensure_columns(entity_type.table, columns)
            if added:
                logger.debug(
                    f"Added columns to {entity_type.table}: {', '.join(added)}"
                )

    # =========================================================================
    # Strategy
    # =========================================================================

    def resolve_strategy(
        self,
        entity_type: EntityType,
        strategy_hint: Union[SyncStrategy, str] = SyncStrategy.INCREMENTAL,
    ) -> tuple[SyncStrategy, Optional[datetime]]:
        """
        Decide the strategy and modified-since filter for a run.

        An incremental hint becomes a full run when the entity type has no
        completed run yet.

        Returns:
            Tuple of (strategy, modified_since or None)
        """
        hint = SyncStrategy(strategy_hint)
        if hint is SyncStrategy.FULL:
            return SyncStrategy.FULL, None

        last = self.database.get_last_successful_run(entity_type.value)
        modified_since = _parse_timestamp(last.get("completed_at")) if last else None
        if modified_since is None:
            logger.info(f"No completed {entity_type.value} run yet, running full sync")
            return SyncStrategy.FULL, None
        return SyncStrategy.INCREMENTAL, modified_since

    # =========================================================================
    # Runs
    # =========================================================================

    def _persist(self, run: SyncRun) -> None:
        run.id = self.database.record_sync_run(run.to_dict())

    def run_sync(
        self,
        entity_type: Union[EntityType, str],
        strategy_hint: Union[SyncStrategy, str] = SyncStrategy.INCREMENTAL,
        cancel_event: Optional[threading.Event] = None,
        triggered_by: Optional[str] = None,
    ) -> SyncRun:
        """
        Run one sync of an entity type.

        Args:
            entity_type: Entity type to sync
            strategy_hint: 'incremental' (default) or 'full'
            cancel_event: Checked at every page boundary; when set, the run
                stops after the page in flight and ends as cancelled
            triggered_by: Who or what started the run (for the audit log)

        Returns:
            The finalized SyncRun (completed or cancelled)

        Raises:
            SyncInProgressError: If this entity type is already syncing
            AuthenticationRequired, TokenRefreshError, FetchError, StoreError:
                After the run has been recorded as failed
        """
        entity = EntityType.parse(entity_type)
        lock = self._type_locks[entity]
        if not lock.acquire(blocking=False):
            raise SyncInProgressError(f"A {entity.value} sync is already running")
        try:
            return self._run_locked(entity, strategy_hint, cancel_event, triggered_by)
        finally:
            lock.release()

    def _run_locked(
        self,
        entity: EntityType,
        strategy_hint: Union[SyncStrategy, str],
        cancel_event: Optional[threading.Event],
        triggered_by: Optional[str],
    ) -> SyncRun:
        self.last_runs.pop(entity, None)
        strategy, modified_since = self.resolve_strategy(entity, strategy_hint)
        run = SyncRun(
            sync_type=entity,
            strategy=strategy,
            modified_since=modified_since,
            triggered_by=triggered_by,
        )
        self._persist(run)
        self.last_runs[entity] = run

        since = f" since {modified_since.isoformat()}" if modified_since else ""
        logger.info(f"Starting {strategy.value} {entity.value} sync (run {run.id}){since}")

        if self.matcher is not None:
            self.matcher.reset(entity)

        cursor: Optional[int] = None
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    run.status = SyncRunStatus.CANCELLED
                    logger.info(f"{entity.value} sync cancelled after {run.pages_fetched} pages")
                    break

                records, cursor = self.client.fetch_page(
                    entity,
                    cursor,
                    page_size=self.page_size,
                    modified_since=modified_since,
                )
                run.pages_fetched += 1

                for raw in records:
                    self._process_record(run, entity, raw)

                self._persist(run)
                logger.debug(
                    f"{entity.value} page {run.pages_fetched}: "
                    f"{run.records_processed} processed so far"
                )

                if cursor is None:
                    break

        except Exception as e:
            run.status = SyncRunStatus.FAILED
            run.error_message = str(e)
            run.completed_at = _utc_now()
            self._persist(run)
            logger.error(f"{entity.value} sync failed: {e}")
            raise

        if run.status is SyncRunStatus.RUNNING:
            run.status = SyncRunStatus.COMPLETED
        run.completed_at = _utc_now()
        self._persist(run)

        logger.info(run.summary())
        return run

    def _find_existing(
        self, entity: EntityType, raw: Any
    ) -> tuple[Optional[dict[str, Any]], bool]:
        """
        Find the local row for a record.

        Returns:
            Tuple of (row or None, whether the row was found by secondary match)
        """
        if not isinstance(raw, dict) or raw.get("id") in (None, ""):
            return None, False

        external_id = str(raw["id"])
        existing = self.database.get_by_external_id(entity.table, external_id)
        if existing is not None or self.matcher is None:
            return existing, False

        try:
            match = self.matcher.find_link(entity, raw)
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Secondary match skipped for {entity.value} {external_id}: {e}")
            return None, False
        if not match.is_match:
            return None, False

        rows = self.database.query(entity.table, {"id": match.local_id}, limit=1)
        if not rows:
            return None, False
        return rows[0], True

    def _process_record(self, run: SyncRun, entity: EntityType, raw: Any) -> None:
        """Reconcile, map and upsert one record. Record-level errors are counted."""
        run.records_processed += 1
        external_id = raw.get("id") if isinstance(raw, dict) else None

        try:
            existing, matched = self._find_existing(entity, raw)
            mapped = self.mapper.map_entity(entity, raw, existing)

            if matched and existing is not None:
                self.database.link_external_id(
                    entity.table, existing["id"], mapped.external_id
                )
                if self.matcher is not None:
                    self.matcher.mark_linked(entity, existing["id"])

            result = self.database.upsert(
                entity.table,
                "external_id",
                mapped.to_record(synced_at=_utc_now().isoformat()),
            )
        except (MappingError, UpsertConflictError) as e:
            run.records_failed += 1
            message = f"{entity.value} {external_id}: {e}"
            run.add_error(message)
            logger.warning(f"Skipping record: {message}")
            self.database.append_sync_detail(
                run.id,
                {
                    "external_id": str(external_id) if external_id is not None else None,
                    "action": "failed",
                    "message": str(e),
                },
            )
            return

        if result.created:
            run.records_created += 1
            action = "created"
        else:
            run.records_updated += 1
            action = "linked" if matched else "updated"

        message = None
        if mapped.preserved_labels:
            message = f"kept local values for: {', '.join(mapped.preserved_labels)}"
        self.database.append_sync_detail(
            run.id,
            {
                "external_id": mapped.external_id,
                "local_id": result.local_id,
                "action": action,
                "message": message,
            },
        )

    def trigger_sync(
        self,
        entity_type: Union[EntityType, str],
        strategy: Union[SyncStrategy, str] = SyncStrategy.INCREMENTAL,
        cancel_event: Optional[threading.Event] = None,
        triggered_by: Optional[str] = "manual",
    ) -> Optional[int]:
        """
        Start a sync and return its run id.

        Run-level failures are logged and recorded on the run rather than
        raised; inspect the run's status in the audit log.

        Returns:
            The sync run id, or None if no run could be started
        """
        entity = EntityType.parse(entity_type)
        try:
            run = self.run_sync(entity, strategy, cancel_event, triggered_by)
        except SyncInProgressError as e:
            logger.warning(str(e))
            return None
        except RUN_LEVEL_ERRORS as e:
            logger.error(f"{entity.value} sync run failed: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error during {entity.value} sync: {e}")
        else:
            return run.id
        failed = self.last_runs.get(entity)
        return failed.id if failed is not None else None

    def run_many(
        self,
        entity_types: Optional[list[Union[EntityType, str]]] = None,
        strategy: Union[SyncStrategy, str] = SyncStrategy.INCREMENTAL,
        parallel: bool = True,
        cancel_event: Optional[threading.Event] = None,
        triggered_by: Optional[str] = None,
    ) -> dict[EntityType, Optional[SyncRun]]:
        """
        Sync several entity types, each in its own failure domain.

        Args:
            entity_types: Types to sync; all when None
            strategy: Strategy hint for every run
            parallel: Run the types concurrently in a thread pool
            cancel_event: Shared cancellation flag
            triggered_by: Recorded on every run

        Returns:
            Dictionary of entity type to its SyncRun (failed runs included),
            or None when the run could not start
        """
        types = [EntityType.parse(et) for et in (entity_types or list(EntityType))]
        results: dict[EntityType, Optional[SyncRun]] = {}

        def run_one(entity: EntityType) -> Optional[SyncRun]:
            try:
                return self.run_sync(entity, strategy, cancel_event, triggered_by)
            except SyncInProgressError as e:
                logger.warning(str(e))
                return None
            except RUN_LEVEL_ERRORS:
                return self.last_runs.get(entity)
            except Exception as e:
                logger.exception(f"Unexpected error during {entity.value} sync: {e}")
                return self.last_runs.get(entity)

        if parallel and len(types) > 1:
            with ThreadPoolExecutor(
                max_workers=len(types), thread_name_prefix="crm-sync"
            ) as executor:
                futures = {et: executor.submit(run_one, et) for et in types}
                for et, future in futures.items():
                    results[et] = future.result()
        else:
            for et in types:
                results[et] = run_one(et)

        return results

    def get_status(self) -> dict[str, dict[str, Any]]:
        """
        Summarize sync state per entity type.

        Returns:
            Dictionary keyed by entity type name with the last run, the last
            completed run and the local row count
        """
        status: dict[str, dict[str, Any]] = {}
        for entity in EntityType:
            recent = self.database.get_recent_sync_runs(limit=1, sync_type=entity.value)
            status[entity.value] = {
                "last_run": recent[0] if recent else None,
                "last_successful": self.database.get_last_successful_run(entity.value),
                "row_count": self.database.count_rows(entity.table),
            }
        return status
