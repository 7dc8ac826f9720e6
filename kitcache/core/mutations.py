"""
Optimistic mutation coordination.

Every mutation runs through the same state machine::

    BEGIN -> SPECULATIVE_APPLY -> REMOTE_CALL -> COMMIT | ROLLBACK -> RECONCILE -> DONE

BEGIN and SPECULATIVE_APPLY run synchronously, so on a single event loop no
other cache writer can interleave between the snapshot and the speculative
write. A second mutation on the same entity therefore snapshots the first
one's speculative state, and its rollback restores exactly that.

REMOTE_CALL is the only suspension point. Failures there are classified,
retried according to the request's ``RetryClassifier`` and, once retries run
out, rolled back. The call always returns a tagged outcome (``Committed`` or
``RolledBack``); callers never have to catch coordinator-internal errors.

RECONCILE runs in the background after a settle delay and invalidates the
entity's own keys so server-side side effects show up.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

import ulid
from loguru import logger

from ..datastructures.type_aliases import (
    CacheKey,
    EntityId,
    EntityKind,
    EntityPatch,
    MutationId,
    OwnerId,
    Timestamp,
)
from .cache_store import CacheEntry, CachePolicy, CacheStore, EntityPage, EntryKind
from .errors import ReconciliationFault, RemoteFault, describe_fault
from .interfaces import (
    NotificationSink,
    PreferenceStore,
    RemoteEntityStore,
    Severity,
    discard_notification,
)
from .navigation import NavigationContext
from .projections import (
    REMOVED,
    STALE,
    UNCHANGED,
    filters_decidable,
    matches_filters,
    merge_entity,
    merge_into_page,
    merge_many_into_page,
    prepend_to_page,
    remove_from_page,
    replace_in_page,
    status_change_patch,
)
from .retry import (
    RetryClassifier,
    RetryTrace,
    Sleep,
    call_with_retry,
    create_delete_retry_classifier,
    create_mutation_retry_classifier,
    create_status_retry_classifier,
)
from .stable_keys import (
    DEFAULT_ENCODER,
    EntityKeys,
    StableKeyEncoder,
    decode_list_params,
    format_key,
    navigation_preference_key,
)
from .task_manager import ManagedObject

type Speculation = Callable[[CacheKey, CacheEntry | None], Any]
type CommitProjection = Callable[[CacheKey, CacheEntry | None, Any], Any]

# List order that puts a just-created entity first.
NEWEST_FIRST = ("last_updated", "desc")

DEFAULT_ENTITY_LABELS: Mapping[EntityKind, str] = {
    "projects": "project",
    "companies": "company",
    "artists": "artist",
    "tags": "tag",
}


class MutationPhase(Enum):
    BEGIN = "begin"
    SPECULATIVE_APPLY = "speculative_apply"
    REMOTE_CALL = "remote_call"
    COMMIT = "commit"
    ROLLBACK = "rollback"
    RECONCILE = "reconcile"
    DONE = "done"


class MutationOperation(Enum):
    UPDATE = "update"
    STATUS = "status"
    CREATE = "create"
    DELETE = "delete"
    BATCH_STATUS = "batch_status"
    PREFERENCE = "preference"


@dataclass(slots=True)
class Snapshot:
    """Pre-mutation state of one affected key."""

    key: CacheKey
    existed: bool
    kind: EntryKind | None = None
    value: Any = None
    policy: CachePolicy | None = None
    fetched_at: Timestamp = 0.0
    invalidated: bool = False
    written: bool = False
    removed: bool = False

    @classmethod
    def capture(cls, key: CacheKey, entry: CacheEntry | None) -> Snapshot:
        if entry is None:
            return cls(key=key, existed=False)
        return cls(
            key=key,
            existed=True,
            kind=entry.kind,
            value=entry.value,
            policy=entry.policy,
            fetched_at=entry.fetched_at,
            invalidated=entry.invalidated,
        )


@dataclass(slots=True)
class MutationContext:
    """State owned by one in-flight mutation; discarded once it settles."""

    operation: MutationOperation
    entity_kind: EntityKind
    mutation_id: MutationId = field(default_factory=lambda: str(ulid.new()))
    entity_ids: tuple[EntityId, ...] = ()
    owner_id: OwnerId | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    affected_keys: list[CacheKey] = field(default_factory=list)
    snapshots: dict[CacheKey, Snapshot] = field(default_factory=dict)
    phase: MutationPhase = MutationPhase.BEGIN
    started_at: Timestamp = 0.0
    reconciliation_faults: list[ReconciliationFault] = field(default_factory=list)

    @property
    def written_keys(self) -> list[CacheKey]:
        return [key for key, snapshot in self.snapshots.items() if snapshot.written]


@dataclass(slots=True)
class MutationRequest:
    """Everything the coordinator needs to run one mutation.

    ``speculate`` and ``commit`` return the new value for a key, ``REMOVED`` to
    drop the entry, ``STALE`` to mark it stale without touching its value, or
    ``UNCHANGED`` to leave it alone. ``targets`` are exact
    keys considered even when absent from the cache; ``scan_prefixes`` add
    every cached entry below them.
    """

    operation: MutationOperation
    entity_kind: EntityKind
    remote_call: Callable[[], Awaitable[Any]]
    owner_id: OwnerId | None = None
    entity_ids: tuple[EntityId, ...] = ()
    targets: tuple[CacheKey, ...] = ()
    scan_prefixes: tuple[CacheKey, ...] = ()
    speculate: Speculation | None = None
    commit: CommitProjection | None = None
    authoritative_writes: Callable[[Any], Mapping[CacheKey, Any]] | None = None
    cancel_prefixes: tuple[CacheKey, ...] = ()
    invalidate_on_commit: tuple[CacheKey, ...] = ()
    reconcile_keys: tuple[CacheKey, ...] = ()
    retry: RetryClassifier | None = None
    action: str = "update"
    entity_label: str = "item"
    success_message: Callable[[Any], str | None] | None = None
    notify_failure: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Committed:
    mutation_id: MutationId
    result: Any
    attempts: int = 1


@dataclass(frozen=True, slots=True)
class RolledBack:
    mutation_id: MutationId
    fault: RemoteFault
    attempts: int = 1
    restored_keys: tuple[CacheKey, ...] = ()
    invalidated_keys: tuple[CacheKey, ...] = ()
    reconciliation_faults: tuple[ReconciliationFault, ...] = ()


@dataclass(frozen=True, slots=True)
class Pending:
    mutation_id: MutationId


type MutationOutcome = Committed | RolledBack | Pending


class MutationHandle:
    """Handle for a submitted mutation."""

    def __init__(
        self, context: MutationContext, task: asyncio.Task[Committed | RolledBack]
    ) -> None:
        self.context = context
        self.task = task

    @property
    def mutation_id(self) -> MutationId:
        return self.context.mutation_id

    @property
    def outcome(self) -> MutationOutcome:
        """``Pending`` until the mutation has committed or rolled back."""
        if not self.task.done():
            return Pending(self.mutation_id)
        return self.task.result()

    async def wait(self) -> Committed | RolledBack:
        return await self.task

    def __repr__(self) -> str:
        return f"MutationHandle({self.mutation_id}, phase={self.context.phase.value})"


class OptimisticMutationCoordinator(ManagedObject):
    """Runs mutations against the remote store with optimistic cache updates."""

    def __init__(
        self,
        store: CacheStore,
        remote: RemoteEntityStore,
        *,
        notify: NotificationSink = discard_notification,
        preferences: PreferenceStore | None = None,
        encoder: StableKeyEncoder = DEFAULT_ENCODER,
        settle_delay_seconds: float = 0.25,
        mutation_retry: RetryClassifier | None = None,
        status_retry: RetryClassifier | None = None,
        delete_retry: RetryClassifier | None = None,
        sleep: Sleep = asyncio.sleep,
        today: Callable[[], str] = lambda: date.today().isoformat(),
        entity_labels: Mapping[EntityKind, str] = DEFAULT_ENTITY_LABELS,
        owner_field: str = "user",
    ) -> None:
        super().__init__(name="OptimisticMutationCoordinator")
        self.store = store
        self.remote = remote
        self.notify = notify
        self.preferences = preferences
        self.encoder = encoder
        self.settle_delay_seconds = settle_delay_seconds
        self.mutation_retry = mutation_retry or create_mutation_retry_classifier()
        self.status_retry = status_retry or create_status_retry_classifier()
        self.delete_retry = delete_retry or create_delete_retry_classifier()
        self.sleep = sleep
        self.today = today
        self.entity_labels = dict(entity_labels)
        self.owner_field = owner_field

    # Running mutations

    async def run(self, request: MutationRequest) -> Committed | RolledBack:
        """Run ``request`` to completion and return its outcome."""
        context = self._prepare(request)
        return await self._settle(request, context)

    def submit(self, request: MutationRequest) -> MutationHandle:
        """Apply ``request`` speculatively now and settle it in the background.

        The speculative write is visible as soon as this returns.
        """
        context = self._prepare(request)
        task = self.create_task(
            self._settle(request, context), name=f"mutation:{context.mutation_id}"
        )
        return MutationHandle(context, task)

    def _affected_keys(self, request: MutationRequest) -> list[CacheKey]:
        keys: dict[CacheKey, None] = dict.fromkeys(request.targets)
        for prefix in request.scan_prefixes:
            for key, _entry in self.store.query(prefix):
                keys.setdefault(key, None)
        return list(keys)

    def _prepare(self, request: MutationRequest) -> MutationContext:
        context = MutationContext(
            operation=request.operation,
            entity_kind=request.entity_kind,
            entity_ids=request.entity_ids,
            owner_id=request.owner_id,
            metadata=dict(request.metadata),
            started_at=self.store.clock(),
        )
        logger.debug(
            f"Mutation {context.mutation_id} begin: "
            f"{request.operation.value} {request.entity_kind} "
            f"{list(request.entity_ids)}"
        )

        # Begin
        context.affected_keys = self._affected_keys(request)
        for prefix in request.cancel_prefixes:
            self.store.cancel_in_flight(prefix)
        for key in context.affected_keys:
            self.store.cancel_in_flight(key, exact=True)

        # Speculative apply
        context.phase = MutationPhase.SPECULATIVE_APPLY
        for key in context.affected_keys:
            entry = self.store.peek(key)
            snapshot = Snapshot.capture(key, entry)
            context.snapshots[key] = snapshot
            if request.speculate is None:
                continue
            try:
                value = request.speculate(key, entry)
                self._write(key, entry, value, snapshot)
            except Exception as e:
                logger.warning(
                    f"Speculative update of {format_key(key)} failed, invalidating: {e}"
                )
                self._invalidate_or_escalate(context, key)

        logger.debug(
            f"Mutation {context.mutation_id} applied speculatively to "
            f"{len(context.written_keys)} of {len(context.affected_keys)} keys"
        )
        return context

    def _write(
        self,
        key: CacheKey,
        entry: CacheEntry | None,
        value: Any,
        snapshot: Snapshot | None = None,
    ) -> None:
        if value is UNCHANGED:
            return
        if value is STALE:
            self.store.invalidate(key, exact=True, refetch=False)
            return
        if value is REMOVED:
            if entry is not None:
                self.store.remove(key)
                if snapshot is not None:
                    snapshot.written = True
                    snapshot.removed = True
            return
        kind = entry.kind if entry is not None else EntryKind.DETAIL
        self.store.set(key, value, kind=kind)
        if snapshot is not None:
            snapshot.written = True

    async def _settle(
        self, request: MutationRequest, context: MutationContext
    ) -> Committed | RolledBack:
        context.phase = MutationPhase.REMOTE_CALL
        classifier = request.retry or self.mutation_retry
        trace = RetryTrace()
        try:
            result = await call_with_retry(
                request.remote_call,
                classifier,
                description=f"{request.operation.value} {request.entity_kind}",
                sleep=self.sleep,
                trace=trace,
            )
        except asyncio.CancelledError:
            logger.info(f"Mutation {context.mutation_id} cancelled, rolling back")
            self._rollback(context)
            self._schedule_reconcile(request, context)
            raise
        except RemoteFault as fault:
            restored, invalidated = self._rollback(context)
            logger.warning(
                f"Mutation {context.mutation_id} rolled back after "
                f"{trace.attempts} attempt(s): {fault}"
            )
            if request.notify_failure:
                self._notify(
                    describe_fault(fault, request.action, request.entity_label),
                    Severity.ERROR,
                )
            outcome: Committed | RolledBack = RolledBack(
                mutation_id=context.mutation_id,
                fault=fault,
                attempts=trace.attempts,
                restored_keys=tuple(restored),
                invalidated_keys=tuple(invalidated),
                reconciliation_faults=tuple(context.reconciliation_faults),
            )
        else:
            self._commit(request, context, result)
            logger.info(
                f"Mutation {context.mutation_id} committed "
                f"({request.operation.value} {request.entity_kind})"
            )
            if request.success_message is not None:
                message = request.success_message(result)
                if message:
                    self._notify(message, Severity.SUCCESS)
            outcome = Committed(context.mutation_id, result, trace.attempts)

        self._schedule_reconcile(request, context)
        return outcome

    def _commit(
        self, request: MutationRequest, context: MutationContext, result: Any
    ) -> None:
        context.phase = MutationPhase.COMMIT
        try:
            if request.commit is not None:
                for key in self._affected_keys(request):
                    entry = self.store.peek(key)
                    self._write(key, entry, request.commit(key, entry, result))
            if request.authoritative_writes is not None:
                for key, value in request.authoritative_writes(result).items():
                    entry = self.store.peek(key)
                    self.store.set(
                        key, value, kind=entry.kind if entry else EntryKind.DETAIL
                    )
            for key in request.invalidate_on_commit:
                self.store.invalidate(key)
        except Exception as e:
            self._escalate(
                context,
                ReconciliationFault(
                    f"Commit of mutation {context.mutation_id} failed: {e}",
                    keys=tuple(context.affected_keys),
                ),
            )

    def _rollback(
        self, context: MutationContext
    ) -> tuple[list[CacheKey], list[CacheKey]]:
        """Restore every written snapshot verbatim.

        Entries that vanished since the speculative write (evicted or removed
        by someone else) are invalidated instead of partially restored.
        """
        context.phase = MutationPhase.ROLLBACK
        restored: list[CacheKey] = []
        invalidated: list[CacheKey] = []
        for key, snapshot in context.snapshots.items():
            if not snapshot.written:
                continue
            try:
                if not snapshot.existed:
                    self.store.remove(key)
                elif snapshot.removed or key in self.store:
                    if snapshot.kind is None or snapshot.policy is None:
                        raise ValueError("snapshot of an existing entry is incomplete")
                    self.store.restore(
                        key,
                        snapshot.value,
                        kind=snapshot.kind,
                        policy=snapshot.policy,
                        fetched_at=snapshot.fetched_at,
                        invalidated=snapshot.invalidated,
                    )
                else:
                    logger.debug(
                        f"{format_key(key)} evicted before rollback, invalidating"
                    )
                    self._invalidate_or_escalate(context, key)
                    invalidated.append(key)
                    continue
                restored.append(key)
            except Exception as e:
                logger.warning(f"Could not restore {format_key(key)}: {e}")
                self._invalidate_or_escalate(context, key)
                invalidated.append(key)
        return restored, invalidated

    def _invalidate_or_escalate(self, context: MutationContext, key: CacheKey) -> None:
        try:
            self.store.invalidate(key)
        except Exception as e:
            self._escalate(
                context,
                ReconciliationFault(
                    f"Invalidation of {format_key(key)} failed: {e}", keys=(key,)
                ),
            )

    def _escalate(self, context: MutationContext, fault: ReconciliationFault) -> None:
        """Record ``fault`` and invalidate everything for the entity kind."""
        context.reconciliation_faults.append(fault)
        logger.error(
            f"Mutation {context.mutation_id}: {fault}; "
            f"invalidating all {context.entity_kind} entries"
        )
        self.store.invalidate((context.entity_kind,))

    def _schedule_reconcile(
        self, request: MutationRequest, context: MutationContext
    ) -> None:
        context.phase = MutationPhase.RECONCILE
        if not request.reconcile_keys:
            context.phase = MutationPhase.DONE
            return
        try:
            self.create_task(
                self._reconcile(request, context),
                name=f"reconcile:{context.mutation_id}",
            )
        except RuntimeError:
            logger.debug(f"Skipping reconcile of {context.mutation_id} after shutdown")
            context.phase = MutationPhase.DONE

    async def _reconcile(
        self, request: MutationRequest, context: MutationContext
    ) -> None:
        await self.sleep(self.settle_delay_seconds)
        for key in request.reconcile_keys:
            self._invalidate_or_escalate(context, key)
        context.phase = MutationPhase.DONE
        logger.debug(f"Mutation {context.mutation_id} reconciled")

    def _notify(self, message: str, severity: Severity) -> None:
        try:
            self.notify(message, severity)
        except Exception as e:
            logger.warning(f"Notification sink failed: {e}")

    # Request builders

    def label_for(self, kind: EntityKind) -> str:
        return self.entity_labels.get(kind, kind.rstrip("s") or "item")

    def _keys(self, kind: EntityKind) -> EntityKeys:
        return EntityKeys(kind, self.encoder)

    def _list_scope(self, keys: EntityKeys, owner_id: OwnerId | None) -> CacheKey:
        return keys.owner_lists(owner_id) if owner_id else keys.lists()

    def _aggregate_scope(self, keys: EntityKeys, owner_id: OwnerId | None) -> CacheKey:
        return keys.aggregate(owner_id) if owner_id else (keys.kind, "aggregate")

    def current_value(
        self, kind: EntityKind, entity_id: EntityId, field_name: str
    ) -> Any:
        """Cached value of ``field_name`` for an entity, from its detail or any page."""
        keys = self._keys(kind)
        detail = self.store.peek(keys.detail(entity_id))
        if detail is not None and detail.value is not None:
            return detail.value.get(field_name)
        for _key, entry in self.store.query(keys.lists(), EntryKind.LIST):
            page = EntityPage.from_payload(entry.value)
            index = page.index_of(entity_id)
            if index is not None:
                return page.items[index].get(field_name)
        return None

    def update_request(
        self,
        kind: EntityKind,
        entity_id: EntityId,
        patch: EntityPatch,
        *,
        owner_id: OwnerId | None = None,
        operation: MutationOperation = MutationOperation.UPDATE,
        retry: RetryClassifier | None = None,
        success_message: str | None = None,
    ) -> MutationRequest:
        keys = self._keys(kind)
        detail_key = keys.detail(entity_id)
        list_scope = self._list_scope(keys, owner_id)
        aggregate_scope = self._aggregate_scope(keys, owner_id)
        remote = self.remote

        def speculate(key: CacheKey, entry: CacheEntry | None) -> Any:
            if entry is None:
                return UNCHANGED
            if entry.kind is EntryKind.DETAIL:
                return merge_entity(entry.value, patch)
            if entry.kind is EntryKind.LIST:
                page = EntityPage.from_payload(entry.value)
                return merge_into_page(page, entity_id, patch)
            return UNCHANGED

        def commit(key: CacheKey, entry: CacheEntry | None, result: Any) -> Any:
            if entry is not None and entry.kind is EntryKind.LIST:
                page = EntityPage.from_payload(entry.value)
                return replace_in_page(page, entity_id, result)
            return UNCHANGED

        return MutationRequest(
            operation=operation,
            entity_kind=kind,
            remote_call=lambda: remote.mutate_entity(kind, entity_id, patch),
            owner_id=owner_id,
            entity_ids=(entity_id,),
            targets=(detail_key,),
            scan_prefixes=(list_scope,),
            speculate=speculate,
            commit=commit,
            authoritative_writes=lambda result: {detail_key: result},
            cancel_prefixes=(detail_key, list_scope, aggregate_scope),
            invalidate_on_commit=(aggregate_scope,),
            reconcile_keys=(detail_key, list_scope),
            retry=retry or self.mutation_retry,
            action="update",
            entity_label=self.label_for(kind),
            success_message=(
                (lambda _result: success_message) if success_message else None
            ),
            metadata={"patch": dict(patch)},
        )

    async def update_entity(
        self,
        kind: EntityKind,
        entity_id: EntityId,
        patch: EntityPatch,
        *,
        owner_id: OwnerId | None = None,
    ) -> Committed | RolledBack:
        label = self.label_for(kind)
        return await self.run(
            self.update_request(
                kind,
                entity_id,
                patch,
                owner_id=owner_id,
                success_message=f"{label.capitalize()} updated",
            )
        )

    async def update_status(
        self,
        kind: EntityKind,
        entity_id: EntityId,
        new_status: str,
        *,
        owner_id: OwnerId | None = None,
    ) -> Committed | RolledBack:
        """Change an entity's status, keeping ``date_completed`` in step."""
        current = self.current_value(kind, entity_id, "status")
        patch = status_change_patch(current, new_status, self.today())
        request = self.update_request(
            kind,
            entity_id,
            patch,
            owner_id=owner_id,
            operation=MutationOperation.STATUS,
            retry=self.status_retry,
            success_message=f"Status updated to {new_status}",
        )
        request.metadata["previous_status"] = current
        return await self.run(request)

    def delete_request(
        self, kind: EntityKind, entity_id: EntityId, *, owner_id: OwnerId | None = None
    ) -> MutationRequest:
        keys = self._keys(kind)
        detail_key = keys.detail(entity_id)
        list_scope = self._list_scope(keys, owner_id)
        aggregate_scope = self._aggregate_scope(keys, owner_id)
        remote = self.remote
        label = self.label_for(kind)

        def drop(key: CacheKey, entry: CacheEntry | None, *_result: Any) -> Any:
            if entry is None:
                return UNCHANGED
            if entry.kind is EntryKind.DETAIL:
                return REMOVED
            if entry.kind is EntryKind.LIST:
                return remove_from_page(EntityPage.from_payload(entry.value), entity_id)
            return UNCHANGED

        return MutationRequest(
            operation=MutationOperation.DELETE,
            entity_kind=kind,
            remote_call=lambda: remote.delete_entity(kind, entity_id),
            owner_id=owner_id,
            entity_ids=(entity_id,),
            targets=(detail_key,),
            scan_prefixes=(list_scope,),
            speculate=drop,
            commit=drop,
            cancel_prefixes=(detail_key, list_scope, aggregate_scope),
            invalidate_on_commit=(aggregate_scope,),
            reconcile_keys=(list_scope,),
            retry=self.delete_retry,
            action="delete",
            entity_label=label,
            success_message=lambda _result: f"{label.capitalize()} deleted",
        )

    async def delete_entity(
        self, kind: EntityKind, entity_id: EntityId, *, owner_id: OwnerId | None = None
    ) -> Committed | RolledBack:
        return await self.run(self.delete_request(kind, entity_id, owner_id=owner_id))

    def create_request(
        self, kind: EntityKind, data: EntityPatch, *, owner_id: OwnerId | None = None
    ) -> MutationRequest:
        """Place a new entity at the top of the owner's matching first pages.

        Only newest-first first pages whose filters accept the new entity get
        the placeholder. Pages it cannot be placed in with certainty (other
        sort orders, later pages, filters on fields the payload lacks, or any
        page when the owner is unknown) are marked stale instead.
        """
        keys = self._keys(kind)
        list_scope = self._list_scope(keys, owner_id)
        aggregate_scope = self._aggregate_scope(keys, owner_id)
        payload = dict(data)
        if owner_id:
            payload.setdefault(self.owner_field, owner_id)
        temp_id = f"optimistic-{ulid.new()}"
        remote = self.remote
        label = self.label_for(kind)

        def speculate(key: CacheKey, entry: CacheEntry | None) -> Any:
            if entry is None or entry.kind is not EntryKind.LIST:
                return UNCHANGED
            if not owner_id:
                return STALE
            params = decode_list_params(key)
            filters = params.get("filters") or {}
            if not filters_decidable(payload, filters):
                return STALE
            if not matches_filters(payload, filters):
                return UNCHANGED
            order = (
                params.get("sort_field", NEWEST_FIRST[0]),
                params.get("sort_direction", NEWEST_FIRST[1]),
            )
            if params.get("page", 1) != 1 or order != NEWEST_FIRST:
                return STALE
            page_size = params.get("page_size")
            return prepend_to_page(
                EntityPage.from_payload(entry.value),
                {**payload, "id": temp_id},
                page_size=page_size if isinstance(page_size, int) else None,
            )

        def commit(key: CacheKey, entry: CacheEntry | None, result: Any) -> Any:
            if entry is None or entry.kind is not EntryKind.LIST:
                return UNCHANGED
            page = EntityPage.from_payload(entry.value)
            return replace_in_page(page, temp_id, result)

        return MutationRequest(
            operation=MutationOperation.CREATE,
            entity_kind=kind,
            remote_call=lambda: remote.create_entity(kind, payload),
            owner_id=owner_id,
            scan_prefixes=(list_scope,),
            speculate=speculate,
            commit=commit,
            authoritative_writes=lambda result: {keys.detail(result["id"]): result},
            cancel_prefixes=(list_scope, aggregate_scope),
            invalidate_on_commit=(aggregate_scope,),
            reconcile_keys=(list_scope,),
            retry=self.mutation_retry,
            action="create",
            entity_label=label,
            success_message=lambda _result: f"{label.capitalize()} created",
            metadata={"temporary_id": temp_id},
        )

    async def create_entity(
        self, kind: EntityKind, data: EntityPatch, *, owner_id: OwnerId | None = None
    ) -> Committed | RolledBack:
        return await self.run(self.create_request(kind, data, owner_id=owner_id))

    def batch_status_request(
        self,
        kind: EntityKind,
        entity_ids: Sequence[EntityId],
        new_status: str,
        *,
        owner_id: OwnerId | None = None,
    ) -> MutationRequest:
        """Many status changes in one speculative pass and one rollback unit.

        If any remote update fails the whole batch is rolled back locally; the
        reconcile pass then picks up whatever the server did apply.
        """
        keys = self._keys(kind)
        ids = tuple(dict.fromkeys(entity_ids))
        today = self.today()
        patches = {
            entity_id: status_change_patch(
                self.current_value(kind, entity_id, "status"), new_status, today
            )
            for entity_id in ids
        }
        detail_keys = {keys.detail(entity_id): entity_id for entity_id in ids}
        list_scope = self._list_scope(keys, owner_id)
        aggregate_scope = self._aggregate_scope(keys, owner_id)
        remote = self.remote

        def speculate(key: CacheKey, entry: CacheEntry | None) -> Any:
            if entry is None:
                return UNCHANGED
            if entry.kind is EntryKind.DETAIL and key in detail_keys:
                return merge_entity(entry.value, patches[detail_keys[key]])
            if entry.kind is EntryKind.LIST:
                page = EntityPage.from_payload(entry.value)
                return merge_many_into_page(page, patches)
            return UNCHANGED

        def commit(key: CacheKey, entry: CacheEntry | None, results: Any) -> Any:
            if entry is None or entry.kind is not EntryKind.LIST:
                return UNCHANGED
            by_id = {result["id"]: result for result in results}
            return merge_many_into_page(EntityPage.from_payload(entry.value), by_id)

        async def remote_call() -> list[Any]:
            return list(
                await asyncio.gather(
                    *(remote.mutate_entity(kind, i, patches[i]) for i in ids)
                )
            )

        return MutationRequest(
            operation=MutationOperation.BATCH_STATUS,
            entity_kind=kind,
            remote_call=remote_call,
            owner_id=owner_id,
            entity_ids=ids,
            targets=tuple(detail_keys),
            scan_prefixes=(list_scope,),
            speculate=speculate,
            commit=commit,
            authoritative_writes=lambda results: {
                keys.detail(result["id"]): result for result in results
            },
            cancel_prefixes=(*detail_keys, list_scope, aggregate_scope),
            invalidate_on_commit=(aggregate_scope,),
            reconcile_keys=(*detail_keys, list_scope),
            retry=self.status_retry,
            action="update",
            entity_label=f"{self.label_for(kind)}s",
            success_message=lambda results: f"Updated {len(results)} to {new_status}",
            metadata={"status": new_status},
        )

    async def batch_update_status(
        self,
        kind: EntityKind,
        entity_ids: Iterable[EntityId],
        new_status: str,
        *,
        owner_id: OwnerId | None = None,
    ) -> Committed | RolledBack:
        return await self.run(
            self.batch_status_request(
                kind, list(entity_ids), new_status, owner_id=owner_id
            )
        )

    def preference_request(
        self, owner_id: OwnerId, context: NavigationContext
    ) -> MutationRequest:
        """Persist a navigation context; failures are logged, not notified."""
        if self.preferences is None:
            raise ValueError("No preference store configured")
        preferences = self.preferences
        key = navigation_preference_key(owner_id)
        preference = context.to_preference()

        async def remote_call() -> Any:
            return await preferences.save_navigation_preference(owner_id, preference)

        return MutationRequest(
            operation=MutationOperation.PREFERENCE,
            entity_kind="preferences",
            remote_call=remote_call,
            owner_id=owner_id,
            targets=(key,),
            speculate=lambda _key, _entry: context,
            authoritative_writes=lambda result: {key: result or preference},
            cancel_prefixes=(key,),
            reconcile_keys=(key,),
            retry=self.mutation_retry,
            action="save",
            entity_label="navigation preference",
            notify_failure=False,
        )

    async def save_navigation_preference(
        self, owner_id: OwnerId, context: NavigationContext
    ) -> Committed | RolledBack:
        return await self.run(self.preference_request(owner_id, context))


