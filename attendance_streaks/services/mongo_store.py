"""MongoDB implementation of the streak store (Beanie documents, raw bulk writes for guarded updates)."""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional, Sequence

from pymongo import UpdateOne
from pymongo.errors import BulkWriteError, DuplicateKeyError

from attendance_streaks.models.attendance import AttendanceFact
from attendance_streaks.models.notification import Notification, NotificationOut, NotificationType
from attendance_streaks.models.settings import ATTENDANCE_CONFIG_ID, AttendanceConfig, ProcessingLease
from attendance_streaks.models.streak import StudentStreak
from attendance_streaks.models.subject import Subject, SubjectEnrollment
from attendance_streaks.services.calendar import weekday_abbr
from attendance_streaks.services.errors import StreakWriteConflict
from attendance_streaks.services.store import (
    AbsenceDraft,
    FactInfo,
    GlobalStreakWrite,
    Lease,
    NotificationDraft,
    RosterEntry,
    SubjectInfo,
    SubjectStreakWrite,
    Watermark,
    WriteOp,
    format_day,
    parse_day,
)
from attendance_streaks.services.streak_rules import StreakState, TriggerChange

logger = logging.getLogger(__name__)

_DUPLICATE_KEY = 11000


def _revision_filter(revision: int) -> dict:
    # Records written before revisions existed have no field at all
    if revision == 0:
        return {"$in": [0, None]}
    return revision


def _trigger_fields(trigger: TriggerChange, state: StreakState) -> dict:
    if trigger == TriggerChange.KEEP:
        return {}
    return {"triggered_at3": state.triggered_at3}


def _state_from_doc(doc) -> StreakState:
    return StreakState(
        streak=int(doc.streak or 0),
        triggered_at3=doc.triggered_at3,
        last_date=parse_day(doc.last_date),
        last_status=getattr(doc, "last_status", None) or getattr(doc, "last_status_day", None),
    )


def _notification_out(doc: Notification) -> NotificationOut:
    return NotificationOut(**doc.model_dump())


class MongoStreakStore:
    async def load_watermark(self) -> Watermark:
        cfg = await AttendanceConfig.get(ATTENDANCE_CONFIG_ID)
        if not cfg:
            return Watermark()
        lease = None
        if cfg.processing_lease:
            lease = Lease(holder=cfg.processing_lease.holder, expires_at_ms=cfg.processing_lease.expires_at_ms)
        return Watermark(
            last_absence_backfill_date=parse_day(cfg.last_absence_backfill_date),
            last_streak_run_date=parse_day(cfg.last_streak_run_date),
            lease=lease,
            revision=cfg.revision,
        )

    async def swap_watermark(self, current: Watermark, updated: Watermark) -> bool:
        collection = AttendanceConfig.get_motor_collection()
        lease = None
        if updated.lease:
            lease = ProcessingLease(holder=updated.lease.holder, expires_at_ms=updated.lease.expires_at_ms).model_dump()
        fields = {"processing_lease": lease}
        # Dates are never stored as null: $max merges expect a string or a missing field
        for name, value in (
            ("last_absence_backfill_date", updated.last_absence_backfill_date),
            ("last_streak_run_date", updated.last_streak_run_date),
        ):
            if value is not None:
                fields[name] = format_day(value)

        if current.revision is None:
            try:
                await collection.insert_one({"_id": ATTENDANCE_CONFIG_ID, **fields, "revision": 1})
            except DuplicateKeyError:
                return False
            return True

        result = await collection.update_one(
            {"_id": ATTENDANCE_CONFIG_ID, "revision": _revision_filter(current.revision)},
            {"$set": fields, "$inc": {"revision": 1}},
        )
        return result.matched_count == 1

    async def finish_streak_run(self, end_day: date, holder: str) -> None:
        # ISO dates order lexicographically, so $max keeps the watermark monotonic
        await AttendanceConfig.get_motor_collection().update_one(
            {"_id": ATTENDANCE_CONFIG_ID},
            {
                "$max": {"last_streak_run_date": end_day.isoformat()},
                "$inc": {"revision": 1},
            },
            upsert=True,
        )
        await self.clear_lease(holder)

    async def clear_lease(self, holder: str) -> None:
        await AttendanceConfig.get_motor_collection().update_one(
            {"_id": ATTENDANCE_CONFIG_ID, "processing_lease.holder": holder},
            {"$set": {"processing_lease": None}, "$inc": {"revision": 1}},
        )

    async def finish_backfill(self, end_day: date) -> None:
        await AttendanceConfig.get_motor_collection().update_one(
            {"_id": ATTENDANCE_CONFIG_ID},
            {"$max": {"last_absence_backfill_date": end_day.isoformat()}, "$inc": {"revision": 1}},
            upsert=True,
        )

    async def list_subjects(self) -> list[SubjectInfo]:
        subjects = await Subject.find_all().to_list()
        return [
            SubjectInfo(id=str(s.id), name=s.name, active=s.active, days=tuple(s.days))
            for s in subjects
        ]

    async def load_roster(self, subject_id: str) -> list[RosterEntry]:
        entries = await SubjectEnrollment.find(SubjectEnrollment.subject_id == subject_id).to_list()
        return [
            RosterEntry(student_id=e.student_id, student_name=e.student_name, state=_state_from_doc(e))
            for e in entries
        ]

    async def load_facts(self, day: date, subject_id: str) -> list[FactInfo]:
        facts = await AttendanceFact.find({"day": day.isoformat(), "subject_id": subject_id}).to_list()
        return [
            FactInfo(student_id=f.student_id, remark=f.remark, status=f.status, remarks=f.remarks)
            for f in facts
        ]

    async def load_global_states(self, student_ids: Sequence[str]) -> dict[str, StreakState]:
        if not student_ids:
            return {}
        docs = await StudentStreak.find({"_id": {"$in": list(student_ids)}}).to_list()
        return {d.id: _state_from_doc(d) for d in docs}

    async def commit_batch(self, ops: Sequence[WriteOp]) -> None:
        notifications = [op for op in ops if isinstance(op, NotificationDraft)]
        subject_writes = [op for op in ops if isinstance(op, SubjectStreakWrite)]
        global_writes = [op for op in ops if isinstance(op, GlobalStreakWrite)]

        if notifications:
            await Notification.get_motor_collection().bulk_write(
                [self._notification_op(n) for n in notifications], ordered=True
            )

        if subject_writes:
            result = await SubjectEnrollment.get_motor_collection().bulk_write(
                [self._subject_op(w) for w in subject_writes], ordered=True
            )
            if result.matched_count != len(subject_writes):
                raise StreakWriteConflict("subject", len(subject_writes), result.matched_count)

        if global_writes:
            try:
                result = await StudentStreak.get_motor_collection().bulk_write(
                    [self._global_op(w) for w in global_writes], ordered=True
                )
            except BulkWriteError as e:
                # Upsert collided with an existing record whose last_date moved
                if any(err.get("code") == _DUPLICATE_KEY for err in e.details.get("writeErrors", [])):
                    raise StreakWriteConflict(
                        "global", len(global_writes), e.details.get("nMatched", 0)
                    ) from e
                raise
            applied = result.matched_count + result.upserted_count
            if applied != len(global_writes):
                raise StreakWriteConflict("global", len(global_writes), applied)

    @staticmethod
    def _notification_op(draft: NotificationDraft) -> UpdateOne:
        return UpdateOne(
            {"_id": draft.id},
            {
                "$setOnInsert": {
                    "type": draft.kind.value,
                    "student_id": draft.student_id,
                    "subject_id": draft.subject_id,
                    "date": draft.day.isoformat(),
                    "streak": draft.streak,
                    "created_at": draft.created_at,
                    "resolved": False,
                    "resolved_at": None,
                    "resolved_by": None,
                }
            },
            upsert=True,
        )

    @staticmethod
    def _subject_op(write: SubjectStreakWrite) -> UpdateOne:
        return UpdateOne(
            {
                "subject_id": write.subject_id,
                "student_id": write.student_id,
                "last_date": format_day(write.expected_last_date),
            },
            {
                "$set": {
                    "streak": write.state.streak,
                    "last_status": write.state.last_status,
                    "last_date": format_day(write.state.last_date),
                    "updated_at": write.updated_at,
                    **_trigger_fields(write.trigger, write.state),
                }
            },
        )

    @staticmethod
    def _global_op(write: GlobalStreakWrite) -> UpdateOne:
        return UpdateOne(
            {"_id": write.student_id, "last_date": format_day(write.expected_last_date)},
            {
                "$set": {
                    "streak": write.state.streak,
                    "last_status_day": write.last_status_day,
                    "last_date": format_day(write.state.last_date),
                    "updated_at": write.updated_at,
                    **_trigger_fields(write.trigger, write.state),
                }
            },
            upsert=True,
        )

    async def insert_absences(self, day: date, drafts: Sequence[AbsenceDraft]) -> int:
        if not drafts:
            return 0
        now = datetime.utcnow()
        weekday = weekday_abbr(day)
        ops = []
        for d in drafts:
            ops.append(
                UpdateOne(
                    {"day": day.isoformat(), "subject_id": d.subject_id, "student_id": d.student_id},
                    {
                        "$setOnInsert": {
                            "student_name": d.student_name or f"Student {d.student_id}",
                            "subject_name": d.subject_name or d.subject_id,
                            "status": "Absent",
                            "remark": "Absent",
                            "remarks": "Absent",
                            "timestamp": now,
                            "time_in": None,
                            "time_out": None,
                            "source": "absence-backfill",
                            "is_auto_generated": True,
                            "created_by": "system",
                            "day_of_week": weekday,
                        }
                    },
                    upsert=True,
                )
            )
        result = await AttendanceFact.get_motor_collection().bulk_write(ops, ordered=False)
        return result.upserted_count

    async def list_notifications(
        self,
        *,
        resolved: Optional[bool] = None,
        kind: Optional[NotificationType] = None,
        student_id: Optional[str] = None,
    ) -> list[NotificationOut]:
        query: dict = {}
        if resolved is not None:
            query["resolved"] = resolved
        if kind is not None:
            query["type"] = kind.value
        if student_id:
            query["student_id"] = student_id
        docs = await Notification.find(query).sort("-created_at").to_list()
        return [_notification_out(d) for d in docs]

    async def resolve_notification(self, notification_id: str, resolved_by: Optional[str]) -> Optional[NotificationOut]:
        doc = await Notification.get(notification_id)
        if not doc:
            return None
        if not doc.resolved:
            doc.resolved = True
            doc.resolved_at = datetime.utcnow()
            doc.resolved_by = resolved_by
            await doc.save()
        return _notification_out(doc)

    async def resolve_all_notifications(self, resolved_by: Optional[str]) -> int:
        result = await Notification.find({"resolved": False}).update(
            {"$set": {"resolved": True, "resolved_at": datetime.utcnow(), "resolved_by": resolved_by}}
        )
        return getattr(result, "modified_count", 0)

    async def load_student_streaks(self, student_id: str) -> tuple[Optional[StreakState], dict[str, StreakState]]:
        global_doc = await StudentStreak.get(student_id)
        entries = await SubjectEnrollment.find(SubjectEnrollment.student_id == student_id).to_list()
        subjects = {e.subject_id: _state_from_doc(e) for e in entries}
        return (_state_from_doc(global_doc) if global_doc else None), subjects
