"""Parsing Stage - Structured medical data from extracted text.

Rule-based, line-oriented parser. Section headers ("Medications:",
"Labs:", "Diagnosis:", "Instructions:") set the context for the lines
that follow; lines outside a section are classified by pattern.

Recognized entities:
- Medications: name, strength, unit, route, frequency abbreviations
  (OD, BD, TDS, QID, HS, PRN, ...)
- Lab results: test name, value, unit, H/L flags
- Diagnoses: free text with an optional ICD-10 code
- Instructions: imperative or labelled advice lines
"""

import logging
import re
from typing import Optional

from medsafe.errors import ErrorCode, StageFailed
from medsafe.models import (
    DiagnosisMention,
    InstructionMention,
    LabResultMention,
    MedicalData,
    MedicationMention,
)

logger = logging.getLogger(__name__)

NO_ENTITIES_MESSAGE = (
    "No medications, results or diagnoses could be found in this document; "
    "please upload a clearer image."
)

# Frequency abbreviations and phrases, normalized
FREQUENCY_ABBREV_MAP = {
    "od": "once daily",
    "qd": "once daily",
    "daily": "once daily",
    "once daily": "once daily",
    "bd": "twice daily",
    "bid": "twice daily",
    "twice daily": "twice daily",
    "tds": "three times daily",
    "tid": "three times daily",
    "three times daily": "three times daily",
    "qid": "four times daily",
    "four times daily": "four times daily",
    "hs": "at bedtime",
    "at bedtime": "at bedtime",
    "nocte": "at bedtime",
    "prn": "as needed",
    "as needed": "as needed",
    "stat": "immediately",
    "weekly": "once weekly",
    "once weekly": "once weekly",
}

ROUTE_MAP = {
    "po": "oral",
    "oral": "oral",
    "orally": "oral",
    "iv": "intravenous",
    "im": "intramuscular",
    "sc": "subcutaneous",
    "subcut": "subcutaneous",
    "sl": "sublingual",
    "topical": "topical",
    "inh": "inhaled",
    "inhaled": "inhaled",
}

KNOWN_LABS = {
    "hemoglobin", "haemoglobin", "hb", "hba1c", "glucose", "fasting glucose",
    "creatinine", "egfr", "bun", "urea", "sodium", "potassium", "chloride",
    "cholesterol", "total cholesterol", "ldl", "hdl", "triglycerides",
    "wbc", "rbc", "platelets", "tsh", "t4", "alt", "ast", "alp", "bilirubin",
    "inr", "albumin", "crp", "esr", "ferritin", "vitamin d", "b12",
    "bp", "blood pressure", "pulse", "heart rate",
}

SECTION_HEADERS = {
    "medications": r"medications?|meds|rx|prescriptions?|current medications",
    "labs": r"labs?|lab results|laboratory(?: results)?|results|investigations",
    "diagnoses": r"diagnos[ie]s|dx|impression|assessment|problem list|problems",
    "instructions": r"instructions?|advice|plan|sig|notes?",
}

BULLET_PATTERN = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")

MEDICATION_PATTERN = re.compile(
    r"^(?:(?:tab|tablet|cap|capsule|inj|syp|syrup)\.?\s+)?"
    r"(?P<name>[A-Za-z][A-Za-z\-]*(?:\s+[A-Za-z][A-Za-z\-]*){0,3}?)\s+"
    r"(?P<strength>\d+(?:\.\d+)?)\s*"
    r"(?P<unit>mg|mcg|µg|ug|g|ml|units?|iu)\b(?!/)"
    r"(?P<rest>.*)$",
    re.IGNORECASE,
)

NAME_ONLY_PATTERN = re.compile(
    r"^(?:(?:tab|tablet|cap|capsule|inj|syp|syrup)\.?\s+)?"
    r"(?P<name>[A-Za-z][A-Za-z\-]+)(?P<rest>(?:\s+.*)?)$",
    re.IGNORECASE,
)

LAB_PATTERN = re.compile(
    r"^(?P<name>[A-Za-z][A-Za-z0-9 \-]*?)(?:\s*[:=]\s*|\s+)"
    r"(?P<value>[<>]?\d+(?:\.\d+)?(?:/\d+)?)\s*"
    r"(?P<unit>%|[^\s\[\(]*/[^\s\[\(]+)?"
    r"(?:\s*[\[(]?(?P<flag>HH|LL|HIGH|LOW|CRITICAL|ABNORMAL|H|L)[\])]?)?\s*$",
    re.IGNORECASE,
)

NUMBER_PATTERN = re.compile(r"\d+(?:\.\d+)?")

ICD10_PATTERN = re.compile(r"\b([A-TV-Z][0-9]{2}(?:\.[0-9A-Z]{1,4})?)\b")

INSTRUCTION_VERBS = re.compile(
    r"^(?:take|avoid|do not|don't|continue|stop|follow[- ]up|return|drink|apply|use|rest)\b",
    re.IGNORECASE,
)

FREQUENCY_PATTERN = re.compile(
    r"\b(?:"
    + "|".join(sorted((re.escape(k) for k in FREQUENCY_ABBREV_MAP), key=len, reverse=True))
    + r"|every\s+\d+\s+hours?|\d+\s*x\s*(?:daily|a day))\b",
    re.IGNORECASE,
)

ROUTE_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(k) for k in ROUTE_MAP) + r")\b", re.IGNORECASE
)


def _labelled(section: str) -> re.Pattern:
    return re.compile(
        rf"^(?:{SECTION_HEADERS[section]})\s*[:\-]\s*(?P<body>.*)$", re.IGNORECASE
    )


LABELLED_PATTERNS = {section: _labelled(section) for section in SECTION_HEADERS}


def clean_ocr_line(line: str) -> str:
    """Strip bullets, stray OCR symbols and extra whitespace from one line."""
    line = BULLET_PATTERN.sub("", line)
    line = re.sub(r"[^\w\s\.\,\/\-\:\;\(\)\[\]%<>=µ\^']", " ", line)
    return re.sub(r"\s+", " ", line).strip()


def normalize_frequency(text: str) -> Optional[str]:
    """Normalized frequency phrase found in `text`, if any."""
    match = FREQUENCY_PATTERN.search(text)
    if not match:
        return None
    found = re.sub(r"\s+", " ", match.group(0).lower())
    if found in FREQUENCY_ABBREV_MAP:
        return FREQUENCY_ABBREV_MAP[found]
    times = re.match(r"(\d+)\s*x", found)
    if times:
        return f"{times.group(1)} times daily"
    return found


def normalize_route(text: str) -> Optional[str]:
    match = ROUTE_PATTERN.search(text)
    return ROUTE_MAP[match.group(0).lower()] if match else None


class MedicalTextParser:
    """Converts extracted document text into `MedicalData`."""

    def __init__(self, known_labs: Optional[set[str]] = None):
        self.known_labs = known_labs or KNOWN_LABS

    def parse(self, text: str) -> MedicalData:
        entities = []
        section: Optional[str] = None

        for raw_line in text.splitlines():
            line = clean_ocr_line(raw_line)
            if not line:
                continue

            header = self._section_header(line)
            if header is None:
                entities.extend(self._parse_line(line, section))
                continue

            # A labelled line ("Dx: ...") applies to itself only
            header_section, body = header
            if body:
                entities.extend(self._parse_line(body, header_section))
            else:
                section = header_section

        return MedicalData(entities=entities)

    def _section_header(self, line: str) -> Optional[tuple[str, str]]:
        """(section, remaining text) if the line opens a section."""
        for section, pattern in LABELLED_PATTERNS.items():
            match = pattern.match(line)
            if match:
                return section, match.group("body").strip()
        for section, alternatives in SECTION_HEADERS.items():
            if re.fullmatch(rf"(?:{alternatives})", line, re.IGNORECASE):
                return section, ""
        return None

    def _parse_line(self, line: str, section: Optional[str]) -> list:
        if section == "diagnoses":
            return self.parse_diagnoses(line)
        if section == "instructions":
            return [InstructionMention(raw_text=line, text=line)]

        lab = self.parse_lab(line, in_lab_section=section == "labs")
        if lab is not None:
            return [lab]

        medication = self.parse_medication(line, in_medication_section=section == "medications")
        if medication is not None:
            return [medication]

        if INSTRUCTION_VERBS.match(line):
            return [InstructionMention(raw_text=line, text=line)]
        return []

    def parse_medication(
        self, line: str, in_medication_section: bool = False
    ) -> Optional[MedicationMention]:
        match = MEDICATION_PATTERN.match(line)
        if match:
            rest = match.group("rest")
            unit = match.group("unit").lower().replace("µg", "mcg").replace("ug", "mcg")
            return MedicationMention(
                raw_text=line,
                name=match.group("name").strip(),
                strength=float(match.group("strength")),
                unit=unit,
                frequency=normalize_frequency(rest),
                route=normalize_route(rest),
            )

        if in_medication_section and not INSTRUCTION_VERBS.match(line):
            match = NAME_ONLY_PATTERN.match(line)
            if match:
                rest = match.group("rest")
                return MedicationMention(
                    raw_text=line,
                    name=match.group("name"),
                    frequency=normalize_frequency(rest),
                    route=normalize_route(rest),
                )
        return None

    def parse_lab(self, line: str, in_lab_section: bool = False) -> Optional[LabResultMention]:
        match = LAB_PATTERN.match(line)
        if not match:
            return None

        name = match.group("name").strip()
        unit = match.group("unit")
        lab_unit = unit is not None and ("/" in unit or unit == "%")
        if not (lab_unit or in_lab_section or name.lower() in self.known_labs):
            return None

        raw_value = match.group("value")
        value = float(raw_value) if NUMBER_PATTERN.fullmatch(raw_value) else raw_value
        flag = match.group("flag")
        return LabResultMention(
            raw_text=line,
            test_name=name,
            value=value,
            unit=unit,
            flag=flag.upper() if flag else None,
        )

    def parse_diagnoses(self, line: str) -> list[DiagnosisMention]:
        mentions = []
        for item in re.split(r"[;,]", line):
            item = item.strip()
            if not item:
                continue
            code_match = ICD10_PATTERN.search(item)
            code = code_match.group(1) if code_match else None
            text = ICD10_PATTERN.sub("", item) if code else item
            text = re.sub(r"[\(\)\[\]]", "", text)
            text = re.sub(r"\s+", " ", text).strip(" -:")
            if text or code:
                mentions.append(
                    DiagnosisMention(raw_text=item, text=text or code, icd10_code=code)
                )
        return mentions


class ParseStage:
    """Parses extracted text and gates on the number of entities found."""

    def __init__(self, parser: Optional[MedicalTextParser] = None, min_entities: int = 1):
        self.parser = parser or MedicalTextParser()
        self.min_entities = min_entities

    def run(self, text: str) -> MedicalData:
        """Parse `text`.

        Raises:
            StageFailed: Fewer than `min_entities` entities (DOC_004).
        """
        data = self.parser.parse(text)
        if data.entity_count < self.min_entities:
            logger.info(
                "Parsed %d entities, fewer than required %d",
                data.entity_count,
                self.min_entities,
            )
            raise StageFailed(NO_ENTITIES_MESSAGE, ErrorCode.PARSE_FAILED, clarify_image=True)
        return data
