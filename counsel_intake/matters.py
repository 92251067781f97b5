"""Legal matter vocabulary shared by the context store and pipeline middleware."""

import re
from typing import Dict, List, Optional

# Broad patterns used to accumulate established matters across the whole transcript.
MATTER_PATTERNS: Dict[str, re.Pattern] = {
    "Family Law": re.compile(r"(divorce|custody|child support|family dispute|marriage|paternity|alimony)", re.I),
    "Employment Law": re.compile(
        r"(employment|workplace|termination|discrimination|harassment|wage|overtime|fired|laid off)", re.I
    ),
    "Business Law": re.compile(r"(business|contract|corporate|company|startup|partnership|\bLLC\b|corporation)", re.I),
    "Intellectual Property": re.compile(
        r"(patent|trademark|copyright|intellectual property|\bIP\b|trade secret)", re.I
    ),
    "Personal Injury": re.compile(
        r"(accident|injury|personal injury|liability|negligence|car crash|slip and fall)", re.I
    ),
    "Criminal Law": re.compile(r"(criminal|arrest|charges|felony|misdemeanor|\bDUI\b|theft)", re.I),
    "Tenant Rights Law": re.compile(r"(tenant|landlord|rental|eviction|housing|lease\b)", re.I),
    "Probate and Estate Planning": re.compile(
        r"(estate|probate|inheritance|\bwill\b(?= and| or|,)|\btrust\b|power of attorney)", re.I
    ),
    "Special Education and IEP Advocacy": re.compile(r"(special education|\bIEP\b|504 plan)", re.I),
    "Immigration Law": re.compile(r"(immigration|visa|green card|citizenship|deportation|asylum)", re.I),
    "Contract Review": re.compile(r"(contract review|agreement review|review (?:my|a|the) contract)", re.I),
}

# Narrow patterns used by the business-scope check on the latest message only.
SCOPE_PATTERNS: Dict[str, re.Pattern] = {
    "Family Law": re.compile(
        r"\b(divorce|custody|child support|family dispute|paternity|alimony|spousal support|domestic violence|"
        r"restraining order)\b",
        re.I,
    ),
    "Employment Law": re.compile(
        r"\b(employment|workplace|wrongful termination|discrimination|harassment|unpaid wages?|overtime dispute|"
        r"wrongfully fired|employment contract|workplace injury)\b",
        re.I,
    ),
    "Business Law": re.compile(
        r"\b(business formation|corporate law|LLC formation|partnership agreement|business contract|"
        r"corporate governance|merger|acquisition)\b",
        re.I,
    ),
    "Intellectual Property": re.compile(
        r"\b(patent|trademark|copyright|intellectual property|IP infringement|trade secret|brand protection)\b", re.I
    ),
    "Personal Injury": re.compile(
        r"\b(personal injury|car accident|slip and fall|medical malpractice|product liability|wrongful death|"
        r"premises liability)\b",
        re.I,
    ),
    "Criminal Law": re.compile(
        r"\b(criminal defense|arrest(?:ed)?|criminal charges|DUI|theft|assault|fraud|white collar crime|"
        r"criminal trial)\b",
        re.I,
    ),
    "Tenant Rights Law": re.compile(
        r"\b(tenant rights|landlord dispute|eviction|rental agreement|housing discrimination|security deposit|"
        r"habitability)\b",
        re.I,
    ),
    "Probate and Estate Planning": re.compile(
        r"\b(estate planning|probate|inheritance|power of attorney|estate administration)\b", re.I
    ),
    "Immigration Law": re.compile(
        r"\b(immigration|visa|green card|citizenship|deportation|asylum|refugee|naturalization|work permit)\b", re.I
    ),
}

GENERAL_LEGAL_PATTERNS: List[re.Pattern] = [
    re.compile(r"\b(need a lawyer|want a lawyer|talk to a lawyer|speak with attorney|hire an attorney|find a lawyer)\b", re.I),
    re.compile(r"\b(legal consultation|legal guidance|legal help|legal advice|lawyer consultation)\b", re.I),
    re.compile(r"\b(legal problem|legal issue|legal situation|legal matter|legal question)\b", re.I),
]

# Plain-language matter names users tend to type, mapped to canonical names.
MATTER_KEYWORDS: Dict[str, str] = {
    "family law": "Family Law",
    "employment law": "Employment Law",
    "business law": "Business Law",
    "contract review": "Contract Review",
    "intellectual property": "Intellectual Property",
    "personal injury": "Personal Injury",
    "criminal law": "Criminal Law",
    "civil law": "Civil Law",
    "real estate": "Real Estate",
    "estate planning": "Probate and Estate Planning",
    "immigration": "Immigration Law",
    "bankruptcy": "Bankruptcy",
}

GENERAL_CONSULTATION = "General Consultation"

US_STATES: List[str] = [
    "Alabama", "Alaska", "Arizona", "Arkansas", "California", "Colorado", "Connecticut", "Delaware",
    "Florida", "Georgia", "Hawaii", "Idaho", "Illinois", "Indiana", "Iowa", "Kansas", "Kentucky",
    "Louisiana", "Maine", "Maryland", "Massachusetts", "Michigan", "Minnesota", "Mississippi",
    "Missouri", "Montana", "Nebraska", "Nevada", "New Hampshire", "New Jersey", "New Mexico",
    "New York", "North Carolina", "North Dakota", "Ohio", "Oklahoma", "Oregon", "Pennsylvania",
    "Rhode Island", "South Carolina", "South Dakota", "Tennessee", "Texas", "Utah", "Vermont",
    "Virginia", "Washington", "West Virginia", "Wisconsin", "Wyoming",
]
# Longest names first so "West Virginia" wins over "Virginia".
_STATE_RE = re.compile(
    r"\b(" + "|".join(sorted((re.escape(s) for s in US_STATES), key=len, reverse=True)) + r")\b", re.I
)
_STATE_BY_LOWER = {s.lower(): s for s in US_STATES}

EMAIL_RE = re.compile(r"([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")
PHONE_RE = re.compile(r"(\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4})")
NAME_RE = re.compile(r"(?:my name is|call me)\s+([A-Za-z][A-Za-z\s'-]{1,60}?)(?=[.,!?\n]|$| and )", re.I)
LOCATION_RE = re.compile(r"(?:i'm in|i live in|located in)\s+([A-Za-z\s,]{2,60}?)(?=[.!?\n]|$| and )", re.I)

BASE_DOCUMENTS = [
    {"id": "identification", "name": "Government ID", "description": "Driver's license, passport, or state ID", "required": True},
    {"id": "contact_info", "name": "Contact Information", "description": "Current address, phone number, email", "required": True},
]

MATTER_DOCUMENTS: Dict[str, List[dict]] = {
    "family law": [
        {"id": "marriage_certificate", "name": "Marriage Certificate", "description": "Copy of marriage certificate", "required": True},
        {"id": "children_birth_certificates", "name": "Children's Birth Certificates", "description": "Birth certificates for all children", "required": True},
        {"id": "financial_documents", "name": "Financial Documents", "description": "Bank statements, tax returns, pay stubs", "required": True},
        {"id": "property_documents", "name": "Property Documents", "description": "Deeds, mortgage statements, property appraisals", "required": False},
    ],
    "employment law": [
        {"id": "employment_contract", "name": "Employment Contract", "description": "Original or copy of employment contract", "required": True},
        {"id": "pay_stubs", "name": "Pay Stubs", "description": "Recent pay stubs showing income and deductions", "required": True},
        {"id": "termination_letter", "name": "Termination Letter", "description": "Copy of termination letter or notice", "required": True},
        {"id": "performance_reviews", "name": "Performance Reviews", "description": "Copies of performance reviews or evaluations", "required": False},
        {"id": "benefits_info", "name": "Benefits Information", "description": "Health insurance, retirement plans and similar", "required": False},
    ],
    "personal injury": [
        {"id": "medical_records", "name": "Medical Records", "description": "All medical records related to the injury", "required": True},
        {"id": "police_report", "name": "Police Report", "description": "Copy of police report if applicable", "required": True},
        {"id": "insurance_info", "name": "Insurance Information", "description": "Insurance policy information and correspondence", "required": True},
        {"id": "witness_statements", "name": "Witness Statements", "description": "Statements from any witnesses", "required": False},
        {"id": "photos_evidence", "name": "Photos and Evidence", "description": "Photos of injuries, accident scene, property damage", "required": False},
    ],
    "business law": [
        {"id": "business_formation_docs", "name": "Business Formation Documents", "description": "Articles of incorporation, operating agreements", "required": True},
        {"id": "contracts_agreements", "name": "Contracts and Agreements", "description": "Relevant business contracts and agreements", "required": True},
        {"id": "financial_records", "name": "Financial Records", "description": "Business financial statements, tax returns", "required": True},
        {"id": "correspondence", "name": "Correspondence", "description": "Relevant emails, letters, and communications", "required": False},
    ],
}


def extract_matter_types(text: str) -> List[str]:
    return [matter for matter, pattern in MATTER_PATTERNS.items() if pattern.search(text or "")]


def extract_scope_matters(text: str) -> List[str]:
    return [matter for matter, pattern in SCOPE_PATTERNS.items() if pattern.search(text or "")]


def is_general_legal_request(text: str) -> bool:
    return any(pattern.search(text or "") for pattern in GENERAL_LEGAL_PATTERNS)


def matter_from_keywords(text: str) -> Optional[str]:
    lowered = (text or "").lower()
    for keyword, matter in MATTER_KEYWORDS.items():
        if keyword in lowered:
            return matter
    return None


def extract_state(text: str) -> Optional[str]:
    match = _STATE_RE.search(text or "")
    if not match:
        return None
    return _STATE_BY_LOWER[match.group(1).lower()]


def is_us_state(location: str) -> bool:
    return (location or "").strip().lower() in _STATE_BY_LOWER


def extract_contact_info(text: str) -> Dict[str, str]:
    found: Dict[str, str] = {}
    email = EMAIL_RE.search(text or "")
    if email:
        found["email"] = email.group(1)
    phone = PHONE_RE.search(text or "")
    if phone:
        found["phone"] = phone.group(1)
    name = NAME_RE.search(text or "")
    if name:
        found["name"] = name.group(1).strip()
    location = LOCATION_RE.search(text or "")
    if location:
        found["location"] = location.group(1).strip().rstrip(",")
    return found


def documents_for(matter_type: str) -> List[dict]:
    specific = MATTER_DOCUMENTS.get((matter_type or "").lower(), [])
    return [*BASE_DOCUMENTS, *specific]


def detect_urgency(text: str) -> str:
    lowered = (text or "").lower()
    if "not urgent" in lowered or "routine" in lowered:
        return "low"
    if any(word in lowered for word in ("urgent", "emergency", "immediate", "asap")):
        return "high"
    return "medium"
