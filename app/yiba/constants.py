"""
Central constants for the Yiba Verified application.
"""
from __future__ import annotations

# Roles
PLATFORM_ADMIN = "PLATFORM_ADMIN"
QCTO_SUPER_ADMIN = "QCTO_SUPER_ADMIN"
QCTO_ADMIN = "QCTO_ADMIN"
QCTO_USER = "QCTO_USER"
QCTO_REVIEWER = "QCTO_REVIEWER"
QCTO_AUDITOR = "QCTO_AUDITOR"
QCTO_VIEWER = "QCTO_VIEWER"
INSTITUTION_ADMIN = "INSTITUTION_ADMIN"
INSTITUTION_STAFF = "INSTITUTION_STAFF"
STUDENT = "STUDENT"
ADVISOR = "ADVISOR"
FACILITATOR = "FACILITATOR"

ALL_ROLES = frozenset(
    {
        PLATFORM_ADMIN,
        QCTO_SUPER_ADMIN,
        QCTO_ADMIN,
        QCTO_USER,
        QCTO_REVIEWER,
        QCTO_AUDITOR,
        QCTO_VIEWER,
        INSTITUTION_ADMIN,
        INSTITUTION_STAFF,
        STUDENT,
        ADVISOR,
        FACILITATOR,
    }
)

QCTO_ROLES = frozenset({QCTO_SUPER_ADMIN, QCTO_ADMIN, QCTO_USER, QCTO_REVIEWER, QCTO_AUDITOR, QCTO_VIEWER})

# QCTO roles whose visibility is limited to assigned provinces
PROVINCE_SCOPED_QCTO_ROLES = frozenset({QCTO_ADMIN, QCTO_USER, QCTO_REVIEWER, QCTO_AUDITOR, QCTO_VIEWER})

# Institution-bound roles (must carry institution_id)
INSTITUTION_ROLES = frozenset({INSTITUTION_ADMIN, INSTITUTION_STAFF, STUDENT, FACILITATOR})

# Roles that may act on review workflows
QCTO_REVIEW_ROLES = frozenset({PLATFORM_ADMIN, QCTO_SUPER_ADMIN, QCTO_ADMIN, QCTO_USER, QCTO_REVIEWER})

# Roles allowed to (re)assign reviews
REVIEW_ASSIGNER_ROLES = frozenset({PLATFORM_ADMIN, QCTO_SUPER_ADMIN, QCTO_ADMIN})

# Roles picked up by auto-assignment
REVIEWER_POOL_ROLES = frozenset({QCTO_SUPER_ADMIN, QCTO_ADMIN, QCTO_REVIEWER, QCTO_AUDITOR, QCTO_VIEWER})

PROVINCES = (
    "Eastern Cape",
    "Free State",
    "Gauteng",
    "KwaZulu-Natal",
    "Limpopo",
    "Mpumalanga",
    "North West",
    "Northern Cape",
    "Western Cape",
)

INSTITUTION_TYPES = frozenset({"TVET", "PRIVATE_SDP", "NGO", "UNIVERSITY", "EMPLOYER", "OTHER"})

# Audit change types
CHANGE_CREATE = "CREATE"
CHANGE_UPDATE = "UPDATE"
CHANGE_DELETE = "DELETE"
CHANGE_STATUS = "STATUS_CHANGE"
CHANGE_TYPES = frozenset({CHANGE_CREATE, CHANGE_UPDATE, CHANGE_DELETE, CHANGE_STATUS})

# Entity types used on audit rows and submission resources
ENTITY_USER = "USER"
ENTITY_INSTITUTION = "INSTITUTION"
ENTITY_QUALIFICATION = "QUALIFICATION"
ENTITY_LEARNER = "LEARNER"
ENTITY_ENROLMENT = "ENROLMENT"
ENTITY_READINESS = "READINESS"
ENTITY_FACILITATOR = "FACILITATOR"
ENTITY_DOCUMENT = "DOCUMENT"
ENTITY_EVIDENCE_FLAG = "EVIDENCE_FLAG"
ENTITY_SUBMISSION = "SUBMISSION"
ENTITY_QCTO_REQUEST = "QCTO_REQUEST"
ENTITY_REVIEW_ASSIGNMENT = "REVIEW_ASSIGNMENT"
ENTITY_INVITE = "INVITE"
ENTITY_CAMPAIGN = "INVITE_CAMPAIGN"
ENTITY_EMAIL_TEMPLATE = "EMAIL_TEMPLATE"
ENTITY_EXPORT = "EXPORT"
ENTITY_ISSUE = "ISSUE"

# Pagination
DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 200
