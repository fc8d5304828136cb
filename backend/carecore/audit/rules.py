"""
Maps request paths to the FHIR resource they touch.

Rules are tried in order and the first match wins. A rule either captures the
resource type from the path (FHIR-style ``/fhir/Patient/123``) or carries a
fixed type for a module alias (``/patients/123``).
"""
import re
from dataclasses import dataclass
from typing import Optional

from ..models.Audit import AuditAction

MODULE_TO_RESOURCE_TYPE = {
    "patients": "Patient",
    "practitioners": "Practitioner",
    "encounters": "Encounter",
    "consents": "Consent",
    "documents": "DocumentReference",
}

SEARCH_SEGMENTS = ("_search", "search")


@dataclass(frozen=True)
class ResourceMatch:
    resource_type: str
    resource_id: Optional[str]
    action: AuditAction


@dataclass(frozen=True)
class ResourceRule:
    name: str
    pattern: re.Pattern
    resource_type: Optional[str] = None  # None: use the "type" group

    def match(self, path: str) -> Optional[ResourceMatch]:
        found = self.pattern.match(path)
        if not found:
            return None

        resource_type = self.resource_type or found.group("type")
        resource_id = found.group("id")
        rest = found.group("rest") or ""

        if resource_id in SEARCH_SEGMENTS or _has_search_segment(rest):
            return ResourceMatch(resource_type, None, AuditAction.SEARCH)
        if resource_id:
            return ResourceMatch(resource_type, resource_id, AuditAction.READ)
        return ResourceMatch(resource_type, None, AuditAction.SEARCH)


def _has_search_segment(rest: str) -> bool:
    return any(segment in SEARCH_SEGMENTS for segment in rest.split("/"))


def build_rules(api_prefix: str = "/api") -> list[ResourceRule]:
    prefix = re.escape(api_prefix.rstrip("/"))
    tail = r"(?:/(?P<id>[^/]+))?(?P<rest>/.*)?/?$"

    rules = [
        ResourceRule(
            name="fhir",
            pattern=re.compile(rf"^{prefix}/(?:fhir/)?(?P<type>[A-Z][a-zA-Z]+){tail}"),
        )
    ]
    for module, resource_type in MODULE_TO_RESOURCE_TYPE.items():
        rules.append(
            ResourceRule(
                name=module,
                pattern=re.compile(rf"^{prefix}/{module}{tail}"),
                resource_type=resource_type,
            )
        )
    return rules


def resolve(rules: list[ResourceRule], method: str, path: str) -> Optional[ResourceMatch]:
    """
    Returns the audited resource for a request, or None when the request is
    not audited by the middleware. Only GET is audited here; handlers record
    writes themselves.
    """
    if method.upper() != "GET":
        return None
    for rule in rules:
        match = rule.match(path)
        if match:
            return match
    return None
