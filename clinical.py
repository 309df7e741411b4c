# clinical.py — Treatment vocabulary, effective-treatment fallback, regions,
# lexical classification rules and locally built protocols.

import re
import logging
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from state import DetectedItem, FormFields

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────
# Treatment vocabulary
# ─────────────────────────────────────────────
RESIN          = "resina"
PORCELAIN      = "porcelana"
CROWN          = "coroa"
IMPLANT        = "implante"
ROOT_CANAL     = "endodontia"
REFERRAL       = "encaminhamento"
SOFT_TISSUE    = "gengivoplastia"
ROOT_COVERAGE  = "recobrimento_radicular"

DEFAULT_TREATMENT = RESIN

TREATMENT_TYPES = (RESIN, PORCELAIN, CROWN, IMPLANT, ROOT_CANAL, REFERRAL, SOFT_TISSUE, ROOT_COVERAGE)

# Only these two go through the costly remote protocol generators.
AI_PROTOCOL_TREATMENTS = frozenset({RESIN, PORCELAIN})
GENERIC_TREATMENTS     = frozenset({CROWN, IMPLANT, ROOT_CANAL, REFERRAL, SOFT_TISSUE, ROOT_COVERAGE})

TREATMENT_ALIASES = {
    "resin":          RESIN,
    "composite":      RESIN,
    "porcelain":      PORCELAIN,
    "veneer":         PORCELAIN,
    "crown":          CROWN,
    "implant":        IMPLANT,
    "endodontics":    ROOT_CANAL,
    "root_canal":     ROOT_CANAL,
    "root canal":     ROOT_CANAL,
    "referral":       REFERRAL,
    "gingivoplasty":  SOFT_TISSUE,
    "root_coverage":  ROOT_COVERAGE,
    "root coverage":  ROOT_COVERAGE,
}

TREATMENT_LABELS = {
    RESIN:         "Composite resin",
    PORCELAIN:     "Porcelain veneer",
    CROWN:         "Full crown",
    IMPLANT:       "Implant",
    ROOT_CANAL:    "Root canal",
    REFERRAL:      "Referral",
    SOFT_TISSUE:   "Gingivoplasty",
    ROOT_COVERAGE: "Root coverage",
}

# Virtual selectable unit for the whole-mouth soft-tissue procedure.
SOFT_TISSUE_ITEM_ID = "GENGIVO"
VIRTUAL_ITEM_IDS    = frozenset({SOFT_TISSUE_ITEM_ID})

CERAMIC_TYPE = "lithium disilicate"


def normalize_treatment(value: Optional[str]) -> str:
    """Lower-cases and maps English aliases onto the canonical keys."""
    key = (value or "").strip().lower()
    return TREATMENT_ALIASES.get(key, key)


def find_item(detected_items: Sequence[DetectedItem], item_id: str) -> Optional[DetectedItem]:
    for item in detected_items:
        if item.get("item_id") == item_id:
            return item
    return None


def effective_treatment(
    item_id: str,
    item_treatments: Dict[str, str],
    detected_items: Sequence[DetectedItem],
    form: FormFields,
) -> str:
    """override, then AI suggestion, then form default, then resin."""
    item = find_item(detected_items, item_id)
    return (
        item_treatments.get(item_id)
        or (item or {}).get("treatment_indication")
        or form.get("treatment_type")
        or DEFAULT_TREATMENT
    )


# ─────────────────────────────────────────────
# Regions (FDI numbering)
# ─────────────────────────────────────────────
ANTERIOR_TEETH = frozenset({"11", "12", "13", "21", "22", "23", "31", "32", "33", "41", "42", "43"})


def is_anterior(item_id: str) -> bool:
    return item_id in ANTERIOR_TEETH


def is_upper(item_id: str) -> bool:
    try:
        number = int(item_id)
    except (TypeError, ValueError):
        return True
    return 10 <= number <= 28


def full_region(item_id: str) -> str:
    arch = "superior" if is_upper(item_id) else "inferior"
    if item_id in VIRTUAL_ITEM_IDS:
        return "anterior-superior"
    return f"{'anterior' if is_anterior(item_id) else 'posterior'}-{arch}"


def item_sort_key(item: DetectedItem) -> Tuple[int, str]:
    item_id = item.get("item_id", "")
    try:
        return (int(item_id), item_id)
    except (TypeError, ValueError):
        return (10 ** 6, item_id)


# ─────────────────────────────────────────────
# Lexical rules
# Best-effort keyword classification, evaluated top to bottom.
# ─────────────────────────────────────────────
LexicalRule = Tuple[Tuple[str, ...], str]

CAVITY_CLASS_RULES: List[LexicalRule] = [
    (("lente", "contato", "contact lens"),                                  "Contact Lens Veneer"),
    (("reanatomiza", "microdontia", "volume", "conoide", "peg lateral"),    "Aesthetic Recontouring"),
    (("diastema", "espaçamento", "spacing", "gap"),                         "Diastema Closure"),
    (("faceta", "veneer"),                                                  "Direct Veneer"),
    (("reparo", "substitui", "repair", "replace"),                          "Restoration Repair"),
    (("desgaste", "incisal", "recontorno", "recontour", "wear"),            "Aesthetic Recontouring"),
]

REFERRAL_SPECIALTY_RULES: List[LexicalRule] = [
    (("apinhamento", "ortodon", "maloclus", "alinhamento", "crowding", "orthodon", "malocclusion", "alignment"),
     "Orthodontics"),
    (("canal", "pulp", "periapical", "endodon"),
     "Endodontics"),
    (("perio", "gengiv", "gingiv", "bolsa", "pocket", "retração", "recession"),
     "Periodontics"),
    (("implante", "implant", "cirurg", "surg", "extração", "extraction", "terceiro molar", "third molar"),
     "Oral and Maxillofacial Surgery"),
    (("dtm", "atm", "tmd", "tmj", "articulação", "joint"),
     "TMD / Orofacial Pain"),
]

GINGIVAL_KEYWORDS = (
    "gengivoplastia", "gingivoplasty",
    "excesso gengival", "gingival excess",
    "sorriso gengival", "gummy smile",
    "coroa clínica curta", "coroa clinica curta", "short clinical crown",
    "zênite", "zenite", "zenith",
    "gengiv", "gingiv",
)


def match_rules(text: Optional[str], rules: Iterable[LexicalRule]) -> Optional[str]:
    """First category whose keyword starts a word in text."""
    lowered = (text or "").lower()
    if not lowered:
        return None
    for keywords, category in rules:
        if any(re.search(r"\b" + re.escape(k), lowered) for k in keywords):
            return category
    return None


def is_gingival_text(text: Optional[str]) -> bool:
    lowered = (text or "").lower()
    return any(k in lowered for k in GINGIVAL_KEYWORDS)


def infer_cavity_class(item: Optional[DetectedItem], fallback: str, treatment: str) -> str:
    if item and item.get("cavity_class"):
        return item["cavity_class"]

    category = match_rules((item or {}).get("indication_reason"), CAVITY_CLASS_RULES)
    if category:
        return category

    if treatment == PORCELAIN and fallback.startswith("Class "):
        return "Direct Veneer"
    return fallback


def infer_referral_specialty(reason: Optional[str]) -> Optional[str]:
    return match_rules(reason, REFERRAL_SPECIALTY_RULES)


# ─────────────────────────────────────────────
# Patient helpers
# ─────────────────────────────────────────────
def age_from_birth_date(birth_date: str, today: Optional[date] = None) -> int:
    born  = date.fromisoformat(birth_date)
    today = today or date.today()
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def aesthetic_goals(whitening_level: Optional[str]) -> Optional[str]:
    if whitening_level == "hollywood":
        return "Patient wants intense whitening (Hollywood level, BL1). Prefer ultra-white shades."
    if whitening_level == "white":
        return "Patient wants noticeable whitening (BL2/BL3 level)."
    return None


# ─────────────────────────────────────────────
# Payload builders
# ─────────────────────────────────────────────
def build_evaluation_payload(
    *,
    owner_id: str,
    session_id: str,
    item_id: str,
    item: Optional[DetectedItem],
    treatment: str,
    form: FormFields,
    preferences: dict,
    patient_id: Optional[str],
    asset_ref: Optional[str],
    analysis_result: Optional[dict],
) -> dict:
    # Soft tissue is one whole-mouth procedure, stored under the virtual id.
    virtual = item_id in VIRTUAL_ITEM_IDS or treatment == SOFT_TISSUE
    tooth = SOFT_TISSUE_ITEM_ID if treatment == SOFT_TISSUE else item_id
    na = "N/A"

    return {
        "owner_id":                owner_id,
        "session_id":              session_id,
        "patient_id":              patient_id,
        "patient_name":            form.get("patient_name") or None,
        "patient_age":             int(form["patient_age"]) if str(form.get("patient_age", "")).isdigit() else None,
        "tooth":                   tooth,
        "region":                  full_region(tooth),
        "cavity_class":            na if virtual else infer_cavity_class(item, form["cavity_class"], treatment),
        "restoration_size":        na if virtual else ((item or {}).get("restoration_size") or form["restoration_size"]),
        "substrate":               na if virtual else ((item or {}).get("substrate") or form["substrate"]),
        "depth":                   na if virtual else ((item or {}).get("depth") or form["depth"]),
        "tooth_color":             form["vita_shade"],
        "aesthetic_level":         form["aesthetic_level"],
        "bruxism":                 form["bruxism"],
        "budget":                  form["budget"],
        "longevity_expectation":   form["longevity_expectation"],
        "clinical_notes":          form.get("clinical_notes") or None,
        "photo_ref":               asset_ref,
        "treatment_type":          treatment,
        "ai_treatment_indication": (item or {}).get("treatment_indication") or (analysis_result or {}).get("treatment_indication"),
        "ai_indication_reason":    (item or {}).get("indication_reason"),
        "tooth_bounds":            (item or {}).get("tooth_bounds"),
        "aesthetic_goals":         aesthetic_goals(preferences.get("whitening_level")),
        "status":                  "analyzing",
    }


def build_resin_params(evaluation_id: str, owner_id: str, payload: dict, item: Optional[DetectedItem], form: FormFields) -> dict:
    return {
        "evaluation_id":         evaluation_id,
        "owner_id":              owner_id,
        "patient_age":           payload["patient_age"],
        "tooth":                 payload["tooth"],
        "region":                payload["region"],
        "cavity_class":          payload["cavity_class"],
        "restoration_size":      payload["restoration_size"],
        "substrate":             payload["substrate"],
        "bruxism":               form["bruxism"],
        "aesthetic_level":       form["aesthetic_level"],
        "tooth_color":           form["vita_shade"],
        "budget":                form["budget"],
        "longevity_expectation": form["longevity_expectation"],
        "clinical_notes":        payload["clinical_notes"],
        "aesthetic_goals":       payload["aesthetic_goals"],
        "substrate_condition":   (item or {}).get("substrate_condition") or form["substrate_condition"],
        "enamel_condition":      (item or {}).get("enamel_condition") or form["enamel_condition"],
        "depth":                 payload["depth"],
    }


def build_cementation_params(evaluation_id: str, payload: dict, item: Optional[DetectedItem], form: FormFields) -> dict:
    return {
        "evaluation_id":       evaluation_id,
        "teeth":               [payload["tooth"]],
        "shade":               form["vita_shade"],
        "ceramic_type":        CERAMIC_TYPE,
        "substrate":           payload["substrate"],
        "substrate_condition": (item or {}).get("substrate_condition") or form["substrate_condition"],
        "aesthetic_goals":     payload["aesthetic_goals"],
    }


# ─────────────────────────────────────────────
# Generic protocols (built locally, no remote call)
# ─────────────────────────────────────────────
GENERIC_PROTOCOLS: Dict[str, dict] = {
    IMPLANT: {
        "summary": "Implant planning for tooth {tooth}.",
        "checklist": [
            "Request CBCT of the region",
            "Assess bone volume and quality",
            "Plan implant position and diameter",
            "Check need for bone graft",
            "Schedule surgery",
            "Plan provisional restoration",
        ],
        "alerts": ["Check medical history for contraindications", "Assess smoking habit"],
        "recommendations": ["Refer to an implantologist when needed"],
    },
    CROWN: {
        "summary": "Full crown for tooth {tooth}.",
        "checklist": [
            "Assess remaining tooth structure",
            "Check need for post and core",
            "Crown preparation",
            "Impression or intraoral scan",
            "Cement provisional crown",
            "Try in and cement final crown",
        ],
        "alerts": ["Confirm endodontic status before preparation"],
        "recommendations": ["Prefer metal-free ceramics in the aesthetic zone"],
    },
    ROOT_CANAL: {
        "summary": "Root canal treatment for tooth {tooth}.",
        "checklist": [
            "Periapical radiograph",
            "Pulp vitality tests",
            "Access and canal location",
            "Instrumentation and irrigation",
            "Obturation",
            "Plan definitive restoration",
        ],
        "alerts": ["Rule out vertical root fracture"],
        "recommendations": ["Refer to an endodontist for complex anatomy"],
    },
    REFERRAL: {
        "summary": "Referral to a specialist for tooth {tooth}.",
        "checklist": [
            "Document clinical findings",
            "Write referral letter",
            "Attach photos and radiographs",
            "Schedule follow-up after specialist visit",
        ],
        "alerts": [],
        "recommendations": ["Coordinate the treatment sequence with the specialist"],
    },
    SOFT_TISSUE: {
        "summary": "Gingivoplasty to harmonize the gingival contour.",
        "checklist": [
            "Periodontal probing",
            "Plan new gingival zeniths",
            "Check biological width",
            "Gingival recontouring",
            "Post-operative follow-up",
        ],
        "alerts": ["Wait for tissue maturation before restorative work"],
        "recommendations": ["Perform before restorative procedures"],
    },
    ROOT_COVERAGE: {
        "summary": "Root coverage for tooth {tooth}.",
        "checklist": [
            "Measure recession depth and width",
            "Assess keratinized tissue",
            "Select graft technique",
            "Connective tissue graft surgery",
            "Post-operative follow-up",
        ],
        "alerts": ["Control traumatic brushing before surgery"],
        "recommendations": ["Refer to a periodontist"],
    },
}


def generic_protocol(
    treatment: str,
    tooth: str,
    item: Optional[DetectedItem] = None,
    design_result: Optional[dict] = None,
) -> dict:
    template = GENERIC_PROTOCOLS.get(treatment, GENERIC_PROTOCOLS[REFERRAL])
    reason = (item or {}).get("indication_reason")

    protocol = {
        "treatment_type":  treatment,
        "tooth":           tooth,
        "summary":         template["summary"].format(tooth=tooth),
        "checklist":       list(template["checklist"]),
        "alerts":          list(template["alerts"]),
        "recommendations": list(template["recommendations"]),
        "ai_reason":       reason,
        "generated_at":    date.today().isoformat(),
    }

    if treatment == REFERRAL:
        specialty = infer_referral_specialty(reason)
        if specialty:
            protocol["summary"] = f"Referral to {specialty} for tooth {tooth}."
            protocol["specialty"] = specialty

    if treatment == SOFT_TISSUE:
        teeth = gingival_suggestion_teeth(design_result)
        if teeth:
            protocol["teeth"] = teeth
            protocol["summary"] = f"Gingivoplasty on teeth {', '.join(teeth)}."

    return protocol


def gingival_suggestion_teeth(design_result: Optional[dict]) -> List[str]:
    suggestions = ((design_result or {}).get("analysis") or {}).get("suggestions") or []
    teeth = []
    for s in suggestions:
        text = f"{s.get('current_issue', '')} {s.get('proposed_change', '')}"
        if is_gingival_text(text) and s.get("item_id") and s["item_id"] not in teeth:
            teeth.append(s["item_id"])
    return teeth
