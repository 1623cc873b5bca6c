import os
import shutil
import tempfile
import uuid
from datetime import datetime, timedelta

from tuitionbill.config import cfg
from tuitionbill.db import Database
from tuitionbill.models.lesson import Lesson, LessonParticipant
from tuitionbill.org_service import create_organisation

_MISSING = object()


class BillingDBMixin:
    """A fresh SQLite file per test, with one organisation in it."""

    vat_enabled = False
    vat_rate_percent = 0
    org_overrides = {}

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="tuitionbill_test_")
        self.db = Database(f"sqlite:///{os.path.join(self.tmpdir, 'billing.db')}")
        self.db.create_tables()
        self.session = self.db.get_session()
        self._cfg_restore = []
        self.org_id = f"org_{uuid.uuid4().hex[:8]}"
        create_organisation(
            self.session,
            self.org_id,
            name="Harbour Music School",
            vat_enabled=self.vat_enabled,
            vat_rate_percent=self.vat_rate_percent,
            **self.org_overrides,
        )

    def tearDown(self):
        for path, value in reversed(self._cfg_restore):
            if value is _MISSING:
                cfg.set(path, None)
            else:
                cfg.set(path, value)
        self.session.close()
        self.db.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def override_config(self, path: str, value) -> None:
        found, old = cfg._lookup(path)
        self._cfg_restore.append((path, old if found else _MISSING))
        cfg.set(path, value)

    def add_lesson(self, start_at=None, status="completed", participants=(("s1", "g1", True),),
                   minutes=30, title="Piano", org_id=None) -> Lesson:
        start_at = start_at or datetime(2026, 3, 2, 16, 0)
        lesson = Lesson(
            id=f"l_{uuid.uuid4().hex[:10]}",
            org_id=org_id or self.org_id,
            title=title,
            status=status,
            start_at=start_at,
            end_at=start_at + timedelta(minutes=minutes),
            created_at=datetime.now(),
        )
        # (student_id, guardian_id, is_primary_payer[, attendance_status])
        for student_id, guardian_id, is_primary, *rest in participants:
            lesson.participants.append(
                LessonParticipant(
                    student_id=student_id,
                    guardian_id=guardian_id,
                    is_primary_payer=is_primary,
                    attendance_status=rest[0] if rest else None,
                )
            )
        self.session.add(lesson)
        self.session.commit()
        return lesson

    def new_session(self):
        return self.db.get_session()
