# Central list of WhatsApp event types shared with the frontend settings screen.
APPOINTMENT_CONFIRMED = "appointment_confirmed"
APPOINTMENT_REMINDER = "appointment_reminder"
APPOINTMENT_CANCELLED = "appointment_cancelled"
BILL_CREATED = "bill_created"
PAYMENT_RECEIVED = "payment_received"
GMB_REVIEW_REQUEST = "gmb_review_request"
PRESCRIPTION_READY = "prescription_ready"
TEST_RESULT_READY = "test_result_ready"
FOLLOW_UP_REMINDER = "follow_up_reminder"
VISIT_PRESCRIPTION = "visit_prescription"
INVOICE_GENERATED = "invoice_generated"

ALL_EVENT_TYPES = (
    APPOINTMENT_CONFIRMED,
    APPOINTMENT_REMINDER,
    APPOINTMENT_CANCELLED,
    BILL_CREATED,
    PAYMENT_RECEIVED,
    GMB_REVIEW_REQUEST,
    PRESCRIPTION_READY,
    TEST_RESULT_READY,
    FOLLOW_UP_REMINDER,
    VISIT_PRESCRIPTION,
    INVOICE_GENERATED,
)

# minutes to wait before a queued message becomes due, when the rule sets none
DEFAULT_DELAY_MIN = {
    GMB_REVIEW_REQUEST: 60,
}

# queue row statuses
STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

# stock movement types
MOVEMENT_INWARD = "inward"
MOVEMENT_OUTWARD = "outward"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_RETURN = "return"

# stock alert types
ALERT_LOW_STOCK = "low_stock"
ALERT_EXPIRING = "expiring"
ALERT_EXPIRED = "expired"
