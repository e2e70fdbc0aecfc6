from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import ColumnElement, and_, func, select, update
from sqlalchemy.orm import Session

from app.crm.models import CRMModule, CRMModuleField, CRMRecord, utcnow


SYSTEM_FIELDS: dict[str, tuple[str, str]] = {
    "title": ("Title", "text"),
    "stage": ("Stage", "select"),
    "owner_user_id": ("Owner", "text"),
}

# System fields a field payload may write. The stage only moves through transitions.
WRITABLE_SYSTEM_FIELDS = {"title", "owner_user_id"}


@dataclass(frozen=True, slots=True)
class RecordSnapshot:
    id: uuid.UUID
    module_id: uuid.UUID
    title: str
    stage: str | None
    owner_user_id: str | None
    row_version: int
    data: dict[str, Any] = field(default_factory=dict)

    def values(self) -> dict[str, Any]:
        """Flat field values; system fields shadow same-named data keys."""
        merged = dict(self.data)
        merged["title"] = self.title
        merged["stage"] = self.stage
        merged["owner_user_id"] = self.owner_user_id
        return merged

    def merged_with(self, changes: Mapping[str, Any]) -> dict[str, Any]:
        merged = self.values()
        merged.update(changes)
        return merged


@dataclass(frozen=True, slots=True)
class ModuleFieldDef:
    key: str
    label: str
    field_type: str


class RecordStore(Protocol):
    """Record persistence consumed by the gate and the approval engine.

    Writes are conditional on ``expected_version``; they return the new
    version, or ``None`` when the record changed since it was read.
    """

    def get_record(self, record_id: uuid.UUID) -> RecordSnapshot | None:
        ...

    def update_fields(self, record_id: uuid.UUID, fields: Mapping[str, Any], *, expected_version: int) -> int | None:
        ...

    def set_stage(
        self,
        record_id: uuid.UUID,
        stage: str,
        *,
        expected_version: int,
        fields: Mapping[str, Any] | None = None,
    ) -> int | None:
        ...

    def exists_with_value(
        self,
        module_id: uuid.UUID,
        field_key: str,
        value: Any,
        exclude_record_id: uuid.UUID | None,
        *,
        case_sensitive: bool = False,
        scope: tuple[str, Any] | None = None,
    ) -> bool:
        ...


class ModuleMetadata(Protocol):
    def fields(self, module_id: uuid.UUID) -> list[ModuleFieldDef]:
        ...

    def field_keys(self, module_id: uuid.UUID) -> set[str]:
        ...


def to_snapshot(record: CRMRecord) -> RecordSnapshot:
    return RecordSnapshot(
        id=record.id,
        module_id=record.module_id,
        title=record.title,
        stage=record.stage,
        owner_user_id=record.owner_user_id,
        row_version=record.row_version,
        data=dict(record.data or {}),
    )


class SqlRecordStore:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_record(self, record_id: uuid.UUID) -> RecordSnapshot | None:
        record = self._session.scalar(
            select(CRMRecord).where(CRMRecord.id == record_id).execution_options(populate_existing=True)
        )
        if record is None:
            return None
        return to_snapshot(record)

    def update_fields(self, record_id: uuid.UUID, fields: Mapping[str, Any], *, expected_version: int) -> int | None:
        return self._guarded_write(record_id, expected_version, fields, stage=None)

    def set_stage(
        self,
        record_id: uuid.UUID,
        stage: str,
        *,
        expected_version: int,
        fields: Mapping[str, Any] | None = None,
    ) -> int | None:
        return self._guarded_write(record_id, expected_version, fields or {}, stage=stage)

    def exists_with_value(
        self,
        module_id: uuid.UUID,
        field_key: str,
        value: Any,
        exclude_record_id: uuid.UUID | None,
        *,
        case_sensitive: bool = False,
        scope: tuple[str, Any] | None = None,
    ) -> bool:
        stmt = select(CRMRecord.id).where(CRMRecord.module_id == module_id)
        if exclude_record_id is not None:
            stmt = stmt.where(CRMRecord.id != exclude_record_id)

        target = self._field_expression(field_key)
        needle = str(value).strip()
        if case_sensitive:
            stmt = stmt.where(target == needle)
        else:
            stmt = stmt.where(func.lower(target) == needle.lower())

        if scope is not None:
            scope_field, scope_value = scope
            scope_expression = self._field_expression(scope_field)
            if scope_value is None:
                stmt = stmt.where(scope_expression.is_(None))
            else:
                stmt = stmt.where(scope_expression == str(scope_value))

        return self._session.scalar(stmt.limit(1)) is not None

    def create_record(
        self,
        module_id: uuid.UUID,
        *,
        title: str,
        stage: str | None,
        owner_user_id: str | None,
        data: Mapping[str, Any],
        created_by: str | None,
    ) -> RecordSnapshot:
        record = CRMRecord(
            module_id=module_id,
            title=title,
            stage=stage,
            owner_user_id=owner_user_id,
            data=dict(data),
            created_by=created_by,
        )
        self._session.add(record)
        self._session.flush()
        return to_snapshot(record)

    def _field_expression(self, field_key: str) -> ColumnElement[Any]:
        if field_key in SYSTEM_FIELDS:
            return getattr(CRMRecord, field_key)
        return CRMRecord.data[field_key].as_string()

    def _guarded_write(
        self,
        record_id: uuid.UUID,
        expected_version: int,
        fields: Mapping[str, Any],
        *,
        stage: str | None,
    ) -> int | None:
        current = self.get_record(record_id)
        if current is None or current.row_version != expected_version:
            return None

        values: dict[str, Any] = {
            "updated_at": utcnow(),
            "row_version": CRMRecord.row_version + 1,
        }
        data = dict(current.data)
        for key, value in fields.items():
            if key in WRITABLE_SYSTEM_FIELDS:
                values[key] = value
            elif key not in SYSTEM_FIELDS:
                data[key] = value
        if data != current.data:
            values["data"] = data
        if stage is not None:
            values["stage"] = stage

        result = self._session.execute(
            update(CRMRecord)
            .where(and_(CRMRecord.id == record_id, CRMRecord.row_version == expected_version))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            return None
        return expected_version + 1


class SqlModuleMetadata:
    def __init__(self, session: Session) -> None:
        self._session = session

    def fields(self, module_id: uuid.UUID) -> list[ModuleFieldDef]:
        rows = self._session.scalars(
            select(CRMModuleField).where(CRMModuleField.module_id == module_id).order_by(CRMModuleField.created_at.asc())
        ).all()
        system = [ModuleFieldDef(key=key, label=label, field_type=kind) for key, (label, kind) in SYSTEM_FIELDS.items()]
        return system + [ModuleFieldDef(key=row.key, label=row.label, field_type=row.field_type) for row in rows]

    def field_keys(self, module_id: uuid.UUID) -> set[str]:
        return {item.key for item in self.fields(module_id)}

    def labels(self, module_id: uuid.UUID) -> dict[str, str]:
        return {item.key: item.label for item in self.fields(module_id)}

    def module_exists(self, module_id: uuid.UUID) -> bool:
        return self._session.get(CRMModule, module_id) is not None
