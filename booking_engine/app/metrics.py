# metrics.py
from prometheus_client import Counter, Histogram

SLOT_CLAIMS = Counter("slot_claims_total", "Slot claim attempts by outcome", ["outcome"])
BOOKING_CANCELLATIONS = Counter("booking_cancellations_total", "Booking cancellations by slot outcome", ["slot_outcome"])
MATERIALIZATIONS = Counter("slot_materializations_total", "Slot materialization runs by outcome", ["outcome"])
MATERIALIZATION_LATENCY = Histogram("slot_materialization_seconds", "Slot materialization latency in seconds")
RECONCILED_SLOTS = Counter("external_reconciliation_slots_total", "Slots changed or reported by external calendar reconciliation", ["action"])
WINDOW_TRANSITIONS = Counter("availability_window_transitions_total", "Availability window workflow transitions", ["transition"])
