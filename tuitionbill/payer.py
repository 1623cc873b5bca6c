"""Who pays for a lesson place."""

from dataclasses import dataclass

PAYER_GUARDIAN = "guardian"
PAYER_STUDENT = "student"
PAYER_TYPES = (PAYER_GUARDIAN, PAYER_STUDENT)


@dataclass(frozen=True, order=True)
class PayerKey:
    """Typed payer identity; a guardian and a student with the same id never collide."""

    payer_type: str
    payer_id: str

    def __post_init__(self):
        if self.payer_type not in PAYER_TYPES:
            raise ValueError(f"unknown payer type: {self.payer_type}")
        if not self.payer_id:
            raise ValueError("payer_id is required")

    @classmethod
    def guardian(cls, guardian_id: str) -> "PayerKey":
        return cls(PAYER_GUARDIAN, guardian_id)

    @classmethod
    def student(cls, student_id: str) -> "PayerKey":
        return cls(PAYER_STUDENT, student_id)

    @classmethod
    def parse(cls, text: str) -> "PayerKey":
        """Inverse of str(): "guardian:g1" → PayerKey("guardian", "g1")."""
        payer_type, _, payer_id = str(text or "").partition(":")
        return cls(payer_type.strip().lower(), payer_id.strip())

    def __str__(self) -> str:
        return f"{self.payer_type}:{self.payer_id}"


def resolve_payer(lesson, participant) -> PayerKey:
    """
    The primary-payer guardian when one is set, otherwise the student.

    Applied per participant: a group lesson can resolve to several payers.
    """
    if participant.guardian_id and participant.is_primary_payer:
        return PayerKey.guardian(participant.guardian_id)
    return PayerKey.student(participant.student_id)
