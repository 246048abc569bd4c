"""Context enrichment: direction, contact, calendar slots and company research."""

from mailcrm.enrichment.context import ContextEnricher, EnrichmentResult, detect_direction
from mailcrm.enrichment.research import ClaudeCompanyResearcher, CompanyResearcher
from mailcrm.enrichment.slots import generate_slots, generate_structured_slots

__all__ = [
    "ClaudeCompanyResearcher",
    "CompanyResearcher",
    "ContextEnricher",
    "EnrichmentResult",
    "detect_direction",
    "generate_slots",
    "generate_structured_slots",
]
