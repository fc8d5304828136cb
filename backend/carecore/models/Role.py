from enum import Enum


class Role(str, Enum):
    """Realm roles issued by the identity provider (realm_access.roles)."""
    PATIENT = "patient"
    PRACTITIONER = "practitioner"
    PRACTITIONER_VERIFIED = "practitioner-verified"
    VIEWER = "viewer"
    LAB = "lab"
    INSURER = "insurer"
    SYSTEM = "system"
    ADMIN = "admin"
    AUDIT = "audit"


# Roles that must have an MFA credential configured
CRITICAL_ROLES = (Role.ADMIN.value, Role.PRACTITIONER.value)


class Scope(str, Enum):
    """OAuth2 scopes in "resource:action" form."""
    PATIENT_READ = "patient:read"
    PATIENT_WRITE = "patient:write"
    PRACTITIONER_READ = "practitioner:read"
    PRACTITIONER_WRITE = "practitioner:write"
    ENCOUNTER_READ = "encounter:read"
    ENCOUNTER_WRITE = "encounter:write"
    DOCUMENT_READ = "document:read"
    DOCUMENT_WRITE = "document:write"
    CONSENT_READ = "consent:read"
    CONSENT_WRITE = "consent:write"
    CONSENT_SHARE = "consent:share"
