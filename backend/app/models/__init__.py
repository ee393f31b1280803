from app.models.claim import Pharmacy, Patient, Prescription  # noqa: F401
from app.models.trigger import (  # noqa: F401
    Trigger, CoverageEntry, CoverageStatus, TriggerType, KeywordMatchMode, ADD_ON_TRIGGER_TYPES,
)
from app.models.opportunity import Opportunity, OpportunityStatus  # noqa: F401
from app.models.scan_run import ScanRun  # noqa: F401
from app.models.audit import AuditLog  # noqa: F401
