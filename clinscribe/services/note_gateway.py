"""Clinical note generation through an OpenAI-compatible chat completions API."""

import asyncio
import json
import re
import logging
from datetime import datetime
from typing import Any, Callable, List, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import ScribeConfig
from ..errors import ErrorKind, GenerationError
from ..models.session import ClinicalNote, PatientContext

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "openai/gpt-4o-mini"

MEDICAL_TERMS = ('patient', 'symptoms', 'pain', 'medication', 'history', 'exam', 'vital', 'treatment')

SYSTEM_PROMPT = """You are an assistant that writes medical SOAP notes from transcribed clinician-patient conversations. Analyze the conversation and extract the relevant information into a structured SOAP note.

GUIDELINES:
1. Only include information explicitly mentioned in the transcription
2. Do not make assumptions or add information not present in the conversation
3. Use medical terminology appropriately but keep the note clear
4. If information is unclear or missing, say so explicitly
5. The note is a draft that a licensed clinician must review

OUTPUT FORMAT:
Return a JSON object with the following structure:
{
  "subjective": "Patient's reported symptoms, concerns, and history as stated",
  "objective": "Observable findings, vital signs, physical exam results mentioned",
  "assessment": "Clinical interpretation based on the information provided",
  "plan": "Treatment plan, follow-up instructions, and next steps discussed",
  "confidence": 0.8,
  "warnings": ["Concerns about missing information or unclear statements"]
}"""


class NoteResponse(BaseModel):
    """Shape the model must return; every SOAP section is required."""
    model_config = ConfigDict(extra="ignore")

    subjective: str
    objective: str
    assessment: str
    plan: str
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    warnings: List[str] = Field(default_factory=list)

    @field_validator("subjective", "objective", "assessment", "plan")
    @classmethod
    def section_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("section is empty")
        return value.strip()


def build_soap_prompt(transcription: str,
                      patient: Optional[PatientContext] = None,
                      visit_type: Optional[str] = None,
                      chief_complaint: Optional[str] = None) -> str:
    """User prompt carrying the transcript and optional patient context."""
    prompt = "Please create a SOAP note from the following clinician-patient conversation transcription:\n\n"
    prompt += f"TRANSCRIPTION:\n{transcription}\n\n"

    if patient is not None:
        prompt += "PATIENT CONTEXT:\n"
        prompt += f"Name: {patient.name}\n"
        if patient.age:
            prompt += f"Age: {patient.age}\n"
        if patient.medical_history:
            prompt += f"Medical History: {', '.join(patient.medical_history)}\n"
        if patient.allergies:
            prompt += f"Allergies: {', '.join(patient.allergies)}\n"
        if patient.current_medications:
            prompt += f"Current Medications: {', '.join(patient.current_medications)}\n"
        prompt += "\n"

    if visit_type:
        prompt += f"VISIT TYPE: {visit_type}\n\n"
    if chief_complaint:
        prompt += f"CHIEF COMPLAINT: {chief_complaint}\n\n"

    prompt += ("Organize only the information explicitly mentioned into the SOAP sections, "
               "note anything unclear or missing, and give a confidence score based on how "
               "clear and complete the transcription is.\n\n"
               "Return the response as a JSON object as specified in your system instructions.")
    return prompt


def validate_transcription(transcription: str) -> List[str]:
    """Quality issues that make a transcript a poor basis for a note.

    An empty list means the transcript looks usable.
    """
    issues = []
    words = transcription.split(' ')

    if len(transcription) < 50:
        issues.append("Transcription is too short for meaningful SOAP note generation")

    if len(words) < 20:
        issues.append("Transcription contains insufficient content")

    short_words = re.findall(r"\b[a-z]{1,3}\b", transcription)
    if len(short_words) / len(words) > 0.3:
        issues.append("Transcription may contain garbled or incomplete words")

    lowered = transcription.lower()
    if not any(term in lowered for term in MEDICAL_TERMS):
        issues.append("Transcription may not contain medical conversation content")

    return issues


class NoteGenerationGateway:
    """Requests structured SOAP notes from a chat completions endpoint."""

    def __init__(self,
                 api_key: Optional[str],
                 base_url: str = DEFAULT_BASE_URL,
                 model: str = DEFAULT_MODEL,
                 temperature: float = 0.3,
                 max_tokens: int = 2000,
                 timeout_seconds: float = 60.0,
                 session_factory: Callable[..., Any] = aiohttp.ClientSession):
        """Initialize the gateway.

        Args:
            api_key: Bearer credential; None leaves the gateway unconfigured
            base_url: API root, ``/chat/completions`` is appended
            model: Model identifier in the provider's format
            temperature: Sampling temperature for note generation
            max_tokens: Maximum tokens in the response
            timeout_seconds: Total timeout of one request
            session_factory: Builds the HTTP client session
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self.session_factory = session_factory

        logger.info(f"NoteGenerationGateway initialized with model: {model}")

    @classmethod
    def from_config(cls, config: ScribeConfig) -> "NoteGenerationGateway":
        return cls(
            api_key=config.notes_api_key,
            base_url=config.get('notes.base_url', DEFAULT_BASE_URL),
            model=config.get('notes.model', DEFAULT_MODEL),
            temperature=config.get('notes.temperature', 0.3),
            max_tokens=config.get('notes.max_tokens', 2000),
            timeout_seconds=config.get('notes.timeout_seconds', 60.0),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def generate_note(self,
                            transcription: str,
                            patient: Optional[PatientContext] = None,
                            visit_type: Optional[str] = None,
                            chief_complaint: Optional[str] = None) -> ClinicalNote:
        """Generate a SOAP note for a transcript.

        Raises:
            GenerationError: not configured, request failed, or the response
                is not a complete SOAP note.
        """
        if not self.is_configured:
            raise GenerationError("Note generation API key is not configured", kind=ErrorKind.NOT_CONFIGURED)

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "clinscribe",
        }
        data = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_soap_prompt(transcription, patient, visit_type, chief_complaint)},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }

        logger.info(f"📝 Requesting SOAP note ({len(transcription)} chars of transcript)")
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            async with self.session_factory(timeout=timeout) as session:
                async with session.post(f"{self.base_url}/chat/completions", headers=headers, json=data) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise GenerationError(f"Note API error: {response.status} - {error_text[:200]}")
                    try:
                        result = await response.json()
                    except ValueError as e:
                        raise GenerationError(f"Note API returned a non-JSON body: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GenerationError(f"Note API request failed: {e!r}") from e

        note = self._parse_response(result)
        logger.info("✅ SOAP note generated")
        return note

    @staticmethod
    def _parse_response(result: Any) -> ClinicalNote:
        try:
            content = result["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content:
            raise GenerationError("No content received from note API")

        try:
            parsed = NoteResponse.model_validate(json.loads(content))
        except json.JSONDecodeError as e:
            raise GenerationError(f"Note API returned invalid JSON: {e}") from e
        except ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            raise GenerationError(f"Incomplete SOAP note, invalid sections: {', '.join(fields)}") from e

        return ClinicalNote(
            subjective=parsed.subjective,
            objective=parsed.objective,
            assessment=parsed.assessment,
            plan=parsed.plan,
            generated_at=datetime.now(),
            confidence=parsed.confidence,
            warnings=list(parsed.warnings),
        )
