"""Consolidation orchestrator.

Drives an import batch row by row into canonical identities and source
presence records, and exposes the reconciliation queries built on top of
the stored raw records (duplicate groups, bridges, missing identities).

Rows are processed strictly sequentially.  A row that cannot be identified
is reported in ``ConsolidationResult.errors`` and skipped; any other
exception (the store being unreachable, say) aborts the batch.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

import structlog

from userlens.config import Settings, get_settings
from userlens.identity.bridge import BridgeMatcher, is_pivot_column
from userlens.identity.errors import (
    ExtractionError,
    IdentityError,
    IdentityNotFound,
    NothingToMerge,
    StorageConflict,
)
from userlens.identity.extraction import (
    FieldExtractor,
    detect_active_status,
    detect_last_seen,
)
from userlens.identity.keys import KeyDeriver
from userlens.identity.merge import MergeArbitrator, mark_merged
from userlens.identity.models import (
    AttributeSet,
    BridgeDataset,
    CanonicalIdentity,
    ConsolidationResult,
    CrossSourceReport,
    DuplicateGroup,
    MergeBatchResult,
    MergeResult,
    MissingIdentity,
    PotentialMatch,
    RankedIdentity,
    RawRow,
    RowError,
    SchemaDescriptor,
    SourceDataset,
    is_internal_column,
)
from userlens.identity.similarity import SimilarityScorer
from userlens.identity.store import IdentityStore

logger = structlog.get_logger(__name__)


class ConsolidationOrchestrator:
    """Consolidate source rows into canonical identities held by *store*.

    Parameters
    ----------
    store:
        Storage collaborator (see :mod:`userlens.identity.store`).
    settings:
        Defaults to :func:`userlens.config.get_settings`.
    custom_key:
        Key function used when ``settings.key_strategy`` is ``"custom"``.
    """

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings | None = None,
        custom_key: Callable[[AttributeSet], str | None] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()

        matching = self.settings.matching_config()
        self.extractor = FieldExtractor(self.settings.normalization_config())
        self.key_deriver = KeyDeriver(self.settings.key_strategy_config(custom=custom_key))
        self.scorer = SimilarityScorer(matching)
        self.bridge_matcher = BridgeMatcher(matching)

    # -----------------------------------------------------------------------
    # Import
    # -----------------------------------------------------------------------

    def process_import(
        self,
        import_id: str,
        source_id: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        schema: SchemaDescriptor | None = None,
        file_name: str | None = None,
        imported_at: datetime | None = None,
    ) -> ConsolidationResult:
        """Ingest one batch of parsed rows from *source_id*.

        Each row is stored as a raw record, linked to the identity its
        derived key names (created if new, gap-filled if known) and recorded
        as present in the source for this import.
        """
        imported_at = imported_at or datetime.now(timezone.utc)
        result = ConsolidationResult(import_id=import_id, source_id=source_id, total=len(rows))

        for index, row in enumerate(rows):
            values = dict(row)
            try:
                attrs = self.extractor.extract(values, schema)
                if not attrs.has_identifying_field():
                    msg = "Row has no first name, last name or email"
                    raise ExtractionError(msg)
                attrs.primary_key = self.key_deriver.require(attrs)
            except IdentityError as exc:
                logger.warning(
                    "row_rejected",
                    import_id=import_id,
                    source_id=source_id,
                    row_number=index + 1,
                    reason=exc.reason,
                )
                result.errors.append(RowError(index + 1, exc.reason, str(exc)))
                continue

            raw = self.store.save_raw_row(
                RawRow(
                    values=values,
                    source_id=source_id,
                    import_id=import_id,
                    file_name=file_name,
                    imported_at=imported_at,
                    primary_key=attrs.primary_key,
                    attributes=attrs,
                )
            )

            identity, created = self._resolve_identity(attrs, result)
            if created:
                result.created += 1
            else:
                result.updated += 1

            self._record_presence(identity, attrs, raw, source_id, import_id)
            result.processed += 1

        logger.info("import_processed", import_id=import_id, source_id=source_id, **result.stats())
        return result

    def _resolve_identity(
        self,
        attrs: AttributeSet,
        result: ConsolidationResult,
    ) -> tuple[CanonicalIdentity, bool]:
        """Return ``(identity, created)`` for the row's key."""
        primary_key = attrs.primary_key
        identity = self.store.find_identity_by_key(primary_key)
        if identity is not None:
            self._fill_missing_fields(identity, attrs)
            return identity, False

        duplicates = self.find_potential_duplicates(attrs)
        if duplicates:
            result.possible_duplicates[primary_key] = duplicates
            logger.info(
                "possible_duplicate_detected",
                primary_key=primary_key,
                candidates=[d.identity.primary_key for d in duplicates],
                best_similarity=round(duplicates[0].similarity, 3),
            )

        try:
            return self.store.create_identity(attrs), True
        except StorageConflict:
            logger.warning("identity_key_conflict", primary_key=primary_key)
            identity = self.store.find_identity_by_key(primary_key)
            if identity is None:
                raise
            self._fill_missing_fields(identity, attrs)
            return identity, False

    def _fill_missing_fields(self, identity: CanonicalIdentity, attrs: AttributeSet) -> None:
        patch = identity.missing_fields_from(attrs)
        if patch:
            self.store.update_identity(identity.id, patch)
            for name, value in patch.items():
                setattr(identity, name, value)

    def _record_presence(
        self,
        identity: CanonicalIdentity,
        attrs: AttributeSet,
        raw: RawRow,
        source_id: str,
        import_id: str,
    ) -> None:
        existing = [
            p for p in self.store.find_presence(identity.id, source_id) if p.import_id == import_id
        ]
        if existing:
            logger.info(
                "presence_already_recorded",
                primary_key=identity.primary_key,
                source_id=source_id,
                import_id=import_id,
            )
            return

        self.store.create_presence(
            identity.id,
            source_id,
            import_id,
            raw.id,
            platform_user_id=attrs.username or attrs.email or attrs.primary_key,
            active=detect_active_status(raw.values),
            last_seen_date=detect_last_seen(raw.values),
            payload={
                "original_data": raw.data_columns(),
                "extracted_fields": attrs.as_dict(),
            },
        )

    # -----------------------------------------------------------------------
    # Advisory queries
    # -----------------------------------------------------------------------

    def find_potential_duplicates(self, attrs: AttributeSet) -> list[RankedIdentity]:
        """Existing identities similar to *attrs*.  Never links anything."""
        identities = [
            i for i in self.store.list_identities() if i.primary_key != attrs.primary_key
        ]
        return self.scorer.rank_duplicates(attrs, identities)

    def _datasets(self) -> list[SourceDataset]:
        grouped: dict[str, SourceDataset] = {}
        for row in self.store.list_raw_rows(include_merged=False):
            grouped.setdefault(row.source_id, SourceDataset(source_id=row.source_id)).rows.append(row)
        return list(grouped.values())

    def find_bridge_datasets(self) -> list[BridgeDataset]:
        return self.bridge_matcher.find_bridge_datasets(self._datasets())

    def find_cross_source_matches(self, identity_key: str) -> CrossSourceReport:
        """Bridge analysis for one identity, with the canonical-field recommendation."""
        target_rows = self.store.list_raw_rows(primary_key=identity_key, include_merged=False)
        if not target_rows and self.store.find_identity_by_key(identity_key) is None:
            raise IdentityNotFound(identity_key)
        return self.bridge_matcher.analyse(identity_key, target_rows, self._datasets())

    def find_missing_identities(self) -> list[MissingIdentity]:
        """Active identities present in some sources but absent from others."""
        sources = self.store.list_source_ids()
        if len(sources) <= 1:
            return []

        missing: list[MissingIdentity] = []
        for identity in self.store.list_identities(active_only=True):
            present = sorted({p.source_id for p in self.store.find_presence(identity.id)})
            absent = [s for s in sources if s not in present]
            if present and absent:
                missing.append(
                    MissingIdentity(identity=identity, present_sources=present, missing_sources=absent)
                )
        return missing

    def find_potential_matches(self, identity_key: str) -> list[PotentialMatch]:
        """Near-identical identifier values held by other identities' raw rows."""
        identity = self.store.find_identity_by_key(identity_key)
        if identity is None:
            raise IdentityNotFound(identity_key)

        identifiers: dict[str, str] = {identity_key: "primary_key"}
        for name in ("email", "username"):
            value = getattr(identity, name)
            if value:
                identifiers.setdefault(value, name)

        candidates: list[RawRow] = []
        for row in self.store.list_raw_rows(include_merged=False):
            if row.primary_key == identity_key:
                for column, value in row.string_values():
                    if is_pivot_column(column):
                        identifiers.setdefault(value, column)
            else:
                candidates.append(row)

        pairs = [(field_name, value) for value, field_name in identifiers.items()]
        return self.scorer.find_potential_matches(pairs, candidates)

    # -----------------------------------------------------------------------
    # Merging
    # -----------------------------------------------------------------------

    def merge_records(
        self,
        rows: Sequence[RawRow | Mapping[str, Any]],
        schema: SchemaDescriptor | None = None,
    ) -> MergeResult:
        """Merge records the caller asserts are one person.  Nothing is persisted."""
        records = [r if isinstance(r, RawRow) else RawRow(values=dict(r)) for r in rows]
        arbitrator = MergeArbitrator(self.extractor, self.key_deriver, schema)
        return arbitrator.merge(records)

    def find_duplicate_groups(self) -> list[DuplicateGroup]:
        """Unmerged raw rows sharing a primary key within one source."""
        grouped: dict[tuple[str, str], list[RawRow]] = {}
        for row in self.store.list_raw_rows(include_merged=False):
            if row.primary_key:
                grouped.setdefault((row.primary_key, row.source_id), []).append(row)

        groups = [
            DuplicateGroup(primary_key=key, source_id=source_id, rows=rows)
            for (key, source_id), rows in grouped.items()
            if len(rows) > 1
        ]
        return sorted(groups, key=lambda g: (-g.count, g.primary_key, g.source_id))

    def merge_duplicate_group(
        self,
        primary_key: str,
        source_id: str,
        schema: SchemaDescriptor | None = None,
    ) -> MergeResult:
        """Merge one duplicate group into its newest row and annotate the rest."""
        rows = self.store.list_raw_rows(
            source_id=source_id, primary_key=primary_key, include_merged=False
        )
        if len(rows) <= 1:
            msg = f"No duplicates for {primary_key!r} in source {source_id!r}"
            raise NothingToMerge(msg)

        result = self.merge_records(rows, schema)
        survivor = result.survivor

        internal = {k: v for k, v in survivor.values.items() if is_internal_column(k)}
        self.store.update_raw_row(
            survivor.with_values(
                {**internal, **result.merged_row},
                attributes=result.merged_attrs,
                primary_key=result.merged_attrs.primary_key,
            )
        )
        self.store.update_raw_rows(mark_merged(rows, survivor))

        logger.info(
            "duplicate_group_merged",
            primary_key=primary_key,
            source_id=source_id,
            merged_count=result.merged_count,
            conflicts=result.conflict_fields(),
        )
        return result

    def merge_all_duplicates(self) -> MergeBatchResult:
        groups = self.find_duplicate_groups()
        batch = MergeBatchResult(total=len(groups))
        for group in groups:
            try:
                self.merge_duplicate_group(group.primary_key, group.source_id)
            except IdentityError as exc:
                batch.errors.append(
                    {
                        "primary_key": group.primary_key,
                        "source_id": group.source_id,
                        "error": str(exc),
                    }
                )
                continue
            batch.merged += 1
        return batch

    def merge_identities(self, keep_key: str, duplicate_key: str) -> CanonicalIdentity:
        """Fold a confirmed duplicate identity into *keep_key*.

        Presence in sources the kept identity lacks is copied over, empty
        fields are filled from the duplicate, and the duplicate is
        deactivated.  Nothing is deleted.
        """
        if keep_key == duplicate_key:
            msg = "Cannot merge an identity into itself"
            raise ValueError(msg)

        keep = self.store.find_identity_by_key(keep_key)
        if keep is None:
            raise IdentityNotFound(keep_key)
        duplicate = self.store.find_identity_by_key(duplicate_key)
        if duplicate is None:
            raise IdentityNotFound(duplicate_key)

        kept_sources = {p.source_id for p in self.store.find_presence(keep.id)}
        copied = 0
        for presence in self.store.find_presence(duplicate.id):
            if presence.source_id in kept_sources:
                continue
            self.store.create_presence(
                keep.id,
                presence.source_id,
                presence.import_id,
                presence.raw_record_ref,
                platform_user_id=presence.platform_user_id,
                active=presence.active,
                last_seen_date=presence.last_seen_date,
                payload=presence.payload,
            )
            kept_sources.add(presence.source_id)
            copied += 1

        self._fill_missing_fields(keep, duplicate.to_attributes())
        self.store.update_identity(duplicate.id, {"active": False})

        logger.info(
            "identities_merged",
            keep_key=keep_key,
            duplicate_key=duplicate_key,
            presences_copied=copied,
        )
        return keep
