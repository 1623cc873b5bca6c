# organisations and rate cards
from .organisation import Organisation, RateCard
# lessons (read-only input from scheduling)
from .lesson import Lesson, LessonParticipant
# invoices, billing runs and the billing ledger index
from .invoice import BillingRun, Invoice, InvoiceItem, BilledLesson
from .credit import MakeUpCredit
from .installment import InstallmentPlan, Installment
from .payment import Payment, Refund
from .outbox import OutboxEvent
from .base import Base
