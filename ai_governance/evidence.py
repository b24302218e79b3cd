"""Evidence image analysis on top of the gateway's vision path.

Each evidence type has its own analyst prompt asking the model to answer
with a JSON object. Replies that do not contain parseable JSON are kept as
a plain description so the caller always gets an EvidenceAnalysis back.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ai_governance.gateway import DispatchContext, Gateway
from ai_governance.models import DispatchConfig

_logger = logging.getLogger("ai_governance")

EVIDENCE_TYPES = ("document", "crime_scene", "photo", "diagram")
DEFAULT_EVIDENCE_MODEL = "claude-sonnet-4-5"
EVIDENCE_MAX_TOKENS = 4096

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

PROMPTS: Dict[str, str] = {
    "document": """You are a legal document analyst. Analyze this document image and:
1. Extract all visible text (OCR)
2. Identify document type, date, parties involved
3. Note any signatures, stamps, or official markings
4. Flag any potential issues (alterations, inconsistencies, missing information)
5. Provide a structured analysis

Return your analysis in this JSON format:
{
  "ocrText": "extracted text...",
  "description": "brief description",
  "analysis": {
    "observations": ["observation1", ...],
    "inconsistencies": ["issue1", ...]
  },
  "metadata": { "documentType": "...", "date": "...", "parties": [...] }
}""",
    "crime_scene": """You are a forensic analyst. Analyze this crime scene photo and:
1. Describe what you observe in detail
2. Note positions, distances, and spatial relationships
3. Apply physics principles (blood spatter patterns, gravity, trajectory analysis)
4. Identify any inconsistencies that might suggest staging or alteration
5. Note environmental factors (lighting, weather conditions visible)
6. Identify potential evidence markers or items of interest

Return your analysis in this JSON format:
{
  "description": "detailed scene description",
  "analysis": {
    "observations": ["observation1", ...],
    "inconsistencies": ["issue1", ...],
    "scientificNotes": ["physics/forensic note1", ...],
    "physicsAnalysis": "trajectory, gravity, impact analysis..."
  },
  "metadata": { "sceneType": "...", "evidenceItems": [...], "environmentalConditions": {...} }
}""",
    "photo": """Analyze this photograph as potential evidence:
1. Describe the subject matter and context
2. Note any visible timestamps, metadata indicators
3. Identify people, objects, or locations visible
4. Note lighting, shadows, and any signs of digital alteration
5. Assess the evidentiary value

Return your analysis in this JSON format:
{
  "description": "photo description",
  "analysis": {
    "observations": ["observation1", ...],
    "inconsistencies": ["issue1", ...]
  },
  "metadata": { "subjects": [...], "location": "...", "timeIndicators": [...] }
}""",
    "diagram": """Analyze this diagram or technical drawing:
1. Describe the diagram type and purpose
2. Extract any text, labels, or measurements
3. Note the relationships or flows depicted
4. Identify any technical specifications

Return your analysis in this JSON format:
{
  "ocrText": "extracted text/labels...",
  "description": "diagram description",
  "analysis": {
    "observations": ["observation1", ...]
  },
  "metadata": { "diagramType": "...", "measurements": {...}, "specifications": {...} }
}""",
}


class EvidenceFindings(BaseModel):
    """Findings section of an analysis; camelCase keys come from the model reply."""

    model_config = ConfigDict(populate_by_name=True)

    observations: List[str] = Field(default_factory=list)
    inconsistencies: List[str] = Field(default_factory=list)
    scientific_notes: Optional[List[str]] = Field(default=None, alias="scientificNotes")
    physics_analysis: Optional[str] = Field(default=None, alias="physicsAnalysis")


class EvidenceAnalysis(BaseModel):
    """Structured result of an evidence image analysis."""

    model_config = ConfigDict(populate_by_name=True)

    ocr_text: Optional[str] = Field(default=None, alias="ocrText")
    description: str
    analysis: EvidenceFindings = Field(default_factory=EvidenceFindings)
    metadata: Dict[str, Any] = Field(default_factory=dict)


def normalize_evidence_type(evidence_type: Optional[str]) -> str:
    """Map unknown or missing evidence types onto 'photo'."""
    return evidence_type if evidence_type in EVIDENCE_TYPES else "photo"


def prompt_for(evidence_type: str) -> str:
    """Return the analyst prompt for an evidence type; unknown types use the photo prompt."""
    return PROMPTS.get(evidence_type, PROMPTS["photo"])


def parse_analysis(reply: str, evidence_type: str) -> EvidenceAnalysis:
    """Parse a model reply into an EvidenceAnalysis.

    The first ``{`` through the last ``}`` is treated as the JSON payload.
    When that fails, the whole reply becomes the description.
    """
    match = _JSON_OBJECT.search(reply)
    if match:
        try:
            return EvidenceAnalysis.model_validate(json.loads(match.group(0)))
        except (json.JSONDecodeError, ValidationError) as exc:
            _logger.warning("Evidence reply was not valid analysis JSON: %s", exc)

    return EvidenceAnalysis(
        description=reply,
        analysis=EvidenceFindings(observations=[reply] if reply else []),
        metadata={"evidenceType": evidence_type, "parseError": True},
    )


async def analyze_evidence_image(
    gateway: Gateway,
    image_base64: str,
    media_type: str,
    evidence_type: str,
    caller: str = "evidence_analysis",
    context: Optional[DispatchContext] = None,
    model: str = DEFAULT_EVIDENCE_MODEL,
) -> EvidenceAnalysis:
    """Run an evidence image through the gateway's vision path.

    Policy denial, routing and adapter errors propagate from
    Gateway.analyze_vision unchanged.
    """
    reply = await gateway.analyze_vision(
        image_base64,
        media_type,
        prompt_for(evidence_type),
        DispatchConfig(model=model, max_tokens=EVIDENCE_MAX_TOKENS),
        caller,
        context,
    )
    return parse_analysis(reply, evidence_type)
