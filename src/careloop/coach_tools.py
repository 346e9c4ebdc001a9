# coach_tools.py
# Patient recovery-coach capabilities, built fresh for every request.
#
# Handlers close over the request's patient record and call the injected
# lookup functions. Data sources are supplied by the caller; none ship here.

from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, Field

from careloop.tools import CapabilityRegistry, arg_str

Record = dict[str, Any]


class Medication(BaseModel):
    name: str
    dose: str | None = None
    frequency: str | None = None


class PatientContext(BaseModel):
    """The slice of a patient record the coach tools may see."""

    patient_id: str
    medications: list[Medication] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)
    high_risk: bool = False

    def find_medication(self, name: str) -> Medication | None:
        needle = name.lower().strip()
        for med in self.medications:
            candidate = med.name.lower()
            if needle in candidate or candidate in needle:
                return med
        return None


class ClinicalLookups(BaseModel):
    """Async domain-data lookups. Each returns a serialisable record or None."""

    medication_info: Callable[[str], Awaitable[Record | None]]
    symptom_urgency: Callable[[str], Awaitable[Record | None]]
    explain_term: Callable[[str], Awaitable[Record | None]]


SEVERITIES = ["mild", "moderate", "severe"]
APPOINTMENT_TYPES = ["primary_care", "specialist", "lab_work", "imaging", "general"]

# symptom keyword -> medication name fragments known to cause it
MEDICATION_SIDE_EFFECTS: dict[str, list[str]] = {
    "dizz": ["lisinopril", "metoprolol", "amlodipine", "furosemide"],
    "bleed": ["warfarin", "aspirin", "eliquis", "plavix"],
    "nausea": ["metformin"],
}

_ESCALATE = {"monitor": "call_doctor_today", "call_doctor_soon": "call_doctor_today"}


def possible_medication_cause(symptom: str, patient: PatientContext) -> Medication | None:
    normalized = symptom.lower()
    for keyword, fragments in MEDICATION_SIDE_EFFECTS.items():
        if keyword not in normalized:
            continue
        for med in patient.medications:
            if any(fragment in med.name.lower() for fragment in fragments):
                return med
    return None


def follow_up_guidance(appointment_type: str, patient: PatientContext) -> Record:
    if appointment_type == "primary_care":
        timeframe = "within 3-5 days" if patient.high_risk else "within 7-14 days"
    elif appointment_type == "lab_work" and patient.find_medication("warfarin"):
        timeframe = "within 2-3 days for INR check"
    else:
        timeframe = "as directed in your discharge papers"
    return {
        "appointmentType": appointment_type,
        "timeframe": timeframe,
        "tips": [
            "Bring all your discharge papers",
            "Bring a list of all your medications",
            "Write down any questions you have before your visit",
        ],
    }


def build_coach_capabilities(patient: PatientContext, lookups: ClinicalLookups) -> CapabilityRegistry:
    """Registry of coach tools bound to one patient for one run."""
    registry = CapabilityRegistry()

    async def lookup_medication(args: dict[str, Any]) -> Record:
        name = arg_str(args, "medicationName")
        patient_med = patient.find_medication(name)
        info = await lookups.medication_info(name) or {
            "purpose": "This medication was prescribed by your doctor for your specific condition.",
            "sideEffects": ["Side effects vary - ask your pharmacist or doctor about common ones"],
        }
        return {
            **info,
            "medicationName": name,
            "isPatientMedication": patient_med is not None,
            "patientDose": patient_med.dose if patient_med else None,
            "patientFrequency": patient_med.frequency if patient_med else None,
        }

    async def check_symptom(args: dict[str, Any]) -> Record:
        symptom = arg_str(args, "symptom")
        severity = arg_str(args, "severity", default="moderate")
        urgency = dict(await lookups.symptom_urgency(symptom) or {})
        if not urgency:
            urgency = {
                "urgencyLevel": "call_doctor_soon",
                "guidance": "Call your doctor's office and describe the symptom.",
            }
        if severity == "severe":
            level = urgency.get("urgencyLevel")
            urgency["urgencyLevel"] = _ESCALATE.get(level, level)

        cause = possible_medication_cause(symptom, patient)
        return {
            **urgency,
            "symptom": symptom,
            "severity": severity,
            "possibleMedicationCause": cause.name if cause else None,
        }

    async def explain_medical_term(args: dict[str, Any]) -> Record:
        term = arg_str(args, "term")
        explanation = await lookups.explain_term(term)
        if explanation is None:
            return {"term": term, "found": False, "suggestion": "Ask your care team to explain this term."}
        return {**explanation, "term": term, "found": True}

    def get_follow_up_guidance(args: dict[str, Any]) -> Record:
        return follow_up_guidance(arg_str(args, "appointmentType"), patient)

    registry.register(
        "lookupMedication",
        "Get patient-friendly information about a medication including what it does, "
        "common side effects, and important warnings.",
        {
            "properties": {
                "medicationName": {"type": "string", "description": "The name of the medication to look up"},
            },
            "required": ["medicationName"],
        },
        lookup_medication,
    )
    registry.register(
        "checkSymptom",
        "Check if a symptom requires immediate attention, a call to the doctor, or is likely normal.",
        {
            "properties": {
                "symptom": {"type": "string", "description": "The symptom the patient is experiencing"},
                "severity": {
                    "type": "string",
                    "enum": SEVERITIES,
                    "description": "How severe the symptom appears to be",
                },
            },
            "required": ["symptom"],
        },
        check_symptom,
    )
    registry.register(
        "explainMedicalTerm",
        "Explain a medical term or concept in simple, everyday language.",
        {
            "properties": {
                "term": {"type": "string", "description": "The medical term or concept to explain"},
            },
            "required": ["term"],
        },
        explain_medical_term,
    )
    registry.register(
        "getFollowUpGuidance",
        "Get information about follow-up appointments and when the patient should see their doctor.",
        {
            "properties": {
                "appointmentType": {
                    "type": "string",
                    "enum": APPOINTMENT_TYPES,
                    "description": "The type of follow-up appointment",
                },
            },
            "required": ["appointmentType"],
        },
        get_follow_up_guidance,
    )
    return registry
