"""Service types and the synonym dictionary used to detect them in free text."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from app.logging_config import get_logger

logger = get_logger("service_catalog")


class ServiceType(str, Enum):
    FAMILY_VISA = "FAMILY_VISA"
    GOLDEN_VISA = "GOLDEN_VISA"
    FREELANCE_VISA = "FREELANCE_VISA"
    EMPLOYMENT_VISA = "EMPLOYMENT_VISA"
    VISIT_VISA = "VISIT_VISA"
    MAINLAND_BUSINESS_SETUP = "MAINLAND_BUSINESS_SETUP"
    FREEZONE_BUSINESS_SETUP = "FREEZONE_BUSINESS_SETUP"
    PRO_SERVICES = "PRO_SERVICES"
    VISA_RENEWAL = "VISA_RENEWAL"
    EMIRATES_ID = "EMIRATES_ID"


BUSINESS_SETUP_SERVICES = frozenset({ServiceType.MAINLAND_BUSINESS_SETUP, ServiceType.FREEZONE_BUSINESS_SETUP})
QUALIFY_SERVICES = frozenset(
    {ServiceType.FAMILY_VISA, ServiceType.FREELANCE_VISA, ServiceType.VISIT_VISA, ServiceType.GOLDEN_VISA}
)
RENEWAL_SERVICES = frozenset({ServiceType.VISA_RENEWAL, ServiceType.EMIRATES_ID})

KEYWORD_SCORE = 10
SYNONYM_SCORE = 7
MISSPELLING_SCORE = 5
TRANSLATION_SCORE = 7
CLEAR_WINNER_MARGIN = 3


@dataclass(frozen=True)
class ServiceSynonyms:
    service: ServiceType
    keywords: tuple
    synonyms: tuple
    misspellings: tuple = field(default_factory=tuple)
    translations: tuple = field(default_factory=tuple)


SERVICE_SYNONYMS = (
    ServiceSynonyms(
        ServiceType.FAMILY_VISA,
        keywords=("family visa", "family", "wife", "husband", "child", "children", "dependent", "dependents", "spouse"),
        synonyms=("family residence visa", "family permit", "family sponsorship", "dependent visa", "spouse visa"),
        misspellings=("famili visa", "family viza", "famly visa"),
        translations=("تأشيرة عائلية", "عائلة", "زوجة", "زوج", "أطفال"),
    ),
    ServiceSynonyms(
        ServiceType.GOLDEN_VISA,
        keywords=("golden visa", "golden", "10 year visa", "10-year visa", "long term visa"),
        synonyms=("gold visa", "golden residence", "long-term residence", "permanent visa"),
        misspellings=("golden viza", "golden vis"),
        translations=("تأشيرة ذهبية", "إقامة ذهبية"),
    ),
    ServiceSynonyms(
        ServiceType.FREELANCE_VISA,
        keywords=("freelance visa", "freelance", "freelancer", "freelancing"),
        synonyms=("freelance permit", "freelancer permit", "freelance residence", "self-employed visa"),
        misspellings=("freelance viza", "freelanse", "free lance"),
        translations=("تأشيرة عمل حر", "عمل حر"),
    ),
    ServiceSynonyms(
        ServiceType.EMPLOYMENT_VISA,
        keywords=("employment visa", "work visa", "work permit", "employment", "job visa"),
        synonyms=("employee visa", "worker visa", "work residence", "employment permit", "labor visa"),
        misspellings=("employment viza", "work viza", "employement visa"),
        translations=("تأشيرة عمل", "تصريح عمل"),
    ),
    ServiceSynonyms(
        ServiceType.VISIT_VISA,
        keywords=("visit visa", "tourist visa", "tourist", "visitor visa", "visit"),
        synonyms=("visitor permit", "tourist permit", "short stay visa", "entry visa"),
        misspellings=("visit viza", "tourist viza", "visitor viza"),
        translations=("تأشيرة زيارة", "تأشيرة سياحية"),
    ),
    ServiceSynonyms(
        ServiceType.MAINLAND_BUSINESS_SETUP,
        keywords=("business setup", "business license", "company setup", "mainland", "trade license"),
        synonyms=(
            "mainland business",
            "mainland company",
            "mainland license",
            "business registration",
            "company registration",
            "trade license setup",
            "commercial license",
            "business",
            "company",
        ),
        misspellings=("business set up", "bussiness setup", "bussiness license", "bussiness"),
        translations=("ترخيص تجاري", "شركة بر", "رخصة تجارية"),
    ),
    ServiceSynonyms(
        ServiceType.FREEZONE_BUSINESS_SETUP,
        keywords=("freezone", "free zone", "freezone business", "freezone company", "freezone license"),
        synonyms=(
            "free zone business",
            "free zone company",
            "free zone license",
            "freezone setup",
            "free zone setup",
            "offshore company",
        ),
        misspellings=("free-zone", "freezon", "fre zone"),
        translations=("منطقة حرة", "شركة منطقة حرة"),
    ),
    ServiceSynonyms(
        ServiceType.PRO_SERVICES,
        keywords=("pro", "typing", "immigration", "government services"),
        synonyms=("public relations officer", "pro services", "typing center", "immigration services"),
        misspellings=("pro service", "typing services"),
        translations=("خدمات برو", "خدمات حكومية"),
    ),
    ServiceSynonyms(
        ServiceType.VISA_RENEWAL,
        keywords=("renewal", "renew", "renew visa", "visa renewal", "extend visa"),
        synonyms=("visa extension", "renew residence", "extend residence", "renew permit"),
        misspellings=("renewel", "renual"),
        translations=("تجديد", "تجديد تأشيرة"),
    ),
    ServiceSynonyms(
        ServiceType.EMIRATES_ID,
        keywords=("emirates id", "eid", "emirates id card", "id card"),
        synonyms=("uae id", "emirates identity", "national id", "id renewal"),
        misspellings=("emirate id", "emirates i.d"),
        translations=("هوية إماراتية", "هوية"),
    ),
)


def _contains(text: str, term: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(term.lower())}(?!\w)", text) is not None


def _first_hit(text: str, terms) -> Optional[str]:
    for term in terms:
        if _contains(text, term):
            return term
    return None


def score_services(text: str) -> list[tuple[ServiceType, int]]:
    """Score every service against ``text``; each category counts once."""
    lower = text.lower().strip()
    scores = []
    for entry in SERVICE_SYNONYMS:
        score = 0
        for terms, weight in (
            (entry.keywords, KEYWORD_SCORE),
            (entry.synonyms, SYNONYM_SCORE),
            (entry.misspellings, MISSPELLING_SCORE),
            (entry.translations, TRANSLATION_SCORE),
        ):
            if _first_hit(lower, terms):
                score += weight
        if score:
            scores.append((entry.service, score))
    scores.sort(key=lambda item: item[1], reverse=True)
    return scores


def match_service(text: str) -> Optional[ServiceType]:
    if not text or not text.strip():
        return None

    scores = score_services(text)
    if not scores:
        return None

    best, best_score = scores[0]
    if len(scores) == 1 or best_score - scores[1][1] > CLEAR_WINNER_MARGIN:
        return best

    for service, score in scores:
        if score >= KEYWORD_SCORE:
            return service
    return best


def is_service_term(word: str) -> bool:
    """True when ``word`` on its own is part of the service vocabulary."""
    lower = word.lower().strip()
    return any(
        lower == term or lower in term.split()
        for entry in SERVICE_SYNONYMS
        for term in entry.keywords + entry.synonyms + entry.misspellings
    )
