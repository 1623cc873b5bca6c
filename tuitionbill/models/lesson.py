from datetime import timedelta

from .base import Base, Column, String, Integer, Boolean, DateTime, ForeignKey, Index, relationship


class Lesson(Base):
    """Owned by scheduling; billing only reads it."""

    __tablename__ = "lessons"
    __table_args__ = (Index("ix_lessons_org_start", "org_id", "start_at"),)

    id = Column(String(64), primary_key=True)
    org_id = Column(String(64), ForeignKey("organisations.id"), nullable=False)
    title = Column(String(255), default="")
    status = Column(String(16), nullable=False, default="scheduled")  # scheduled/completed/cancelled
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime)

    participants = relationship(
        "LessonParticipant",
        back_populates="lesson",
        lazy="selectin",
        order_by="LessonParticipant.id",
        cascade="all, delete-orphan",
    )

    @property
    def duration_mins(self) -> int:
        return (self.end_at - self.start_at) // timedelta(minutes=1)


class LessonParticipant(Base):
    __tablename__ = "lesson_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lesson_id = Column(String(64), ForeignKey("lessons.id"), nullable=False, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    guardian_id = Column(String(64), nullable=True)
    is_primary_payer = Column(Boolean, nullable=False, default=False)
    attendance_status = Column(String(32), nullable=True)  # present/absent/cancelled_by_teacher

    lesson = relationship("Lesson", back_populates="participants")
