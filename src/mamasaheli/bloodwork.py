import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import fitz  # PyMuPDF
from google.genai import types
from pydantic import ValidationError

from .config import get_settings
from .errors import handle_store_error
from .gemini_api import (
    SAFETY_SETTINGS,
    GeminiServiceError,
    file_to_image_part,
    get_async_client,
    get_model_name,
    to_service_error,
)
from .models import BloodworkResult, Document, ParsedBloodwork
from .store import Permission, Query, Role, get_store, owner_permissions
from .utils import now_iso

logger = logging.getLogger(__name__)

FLAGS = ("Low", "Normal", "High", "N/A")
MAX_PDF_CHARS = 30000

COMMON_BIOMARKERS = [
    "Hemoglobin", "RBC Count", "Hematocrit", "MCV", "MCH", "MCHC", "RDW-CV", "RDW-SD",
    "Platelet Count", "MPV", "WBC Count", "Total Leucocyte Count", "Neutrophils", "Lymphocytes",
    "Monocytes", "Eosinophils", "Basophils", "TSH", "Free T3", "Free T4",
    "Fasting Blood Sugar", "Postprandial Blood Sugar", "HbA1c", "Glucose Challenge Test",
    "Beta-hCG", "Free Beta-hCG", "PAPP-A", "AFP", "Unconjugated Estriol", "Inhibin A",
    "Serum Ferritin", "Serum Iron", "TIBC", "Transferrin Saturation",
]

RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "results": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "value": {"type": "string"},
                    "unit": {"type": "string"},
                    "referenceRange": {"type": "string"},
                    "flag": {"type": "string", "enum": list(FLAGS)},
                },
                "required": ["name", "value", "unit", "referenceRange", "flag"],
            },
        },
        "allTestNames": {"type": "array", "items": {"type": "string"}},
        "summary": {"type": "string"},
    },
    "required": ["results", "allTestNames", "summary"],
}


def create_extraction_prompt(source: str = "image") -> str:
    return f"""You are a medical data extraction tool. Analyze the provided {source} of a blood test report
and extract its results into structured JSON.

<CONTEXT>
- The report may use Indian units such as "lakhs/µL" for Platelet Count or "/cumm" for WBC counts.
- Prioritize these common pregnancy-related tests: {", ".join(COMMON_BIOMARKERS)}.
</CONTEXT>

<INSTRUCTIONS>
1. Find every test name (biomarker) in the report.
2. For each one extract name, value, unit and referenceRange. Use "" for anything missing.
3. Set flag to "Low", "Normal" or "High" by comparing value with referenceRange, or "N/A" when
   no comparison is possible.
4. List every test name found in "allTestNames", even without full details.
5. Write a one-sentence neutral summary that names any Low or High results.
6. Respond with a single JSON object matching <JSON_SCHEMA> and nothing else.
</INSTRUCTIONS>

<JSON_SCHEMA>
{json.dumps(RESPONSE_SCHEMA, indent=2)}
</JSON_SCHEMA>"""


# ------------------------------------------------------------------------------
# Flags
# ------------------------------------------------------------------------------
_NUMBER = r"[-+]?\d+(?:\.\d+)?"
_BETWEEN = re.compile(rf"^\s*({_NUMBER})\s*(?:-|–|to)\s*({_NUMBER})")
_UPPER = re.compile(rf"^\s*(<=|<|≤|up to)\s*({_NUMBER})", re.IGNORECASE)
_LOWER = re.compile(rf"^\s*(>=|>|≥)\s*({_NUMBER})")


def _to_number(text: Any) -> Optional[float]:
    match = re.search(_NUMBER, str(text or "").replace(",", ""))
    return float(match.group()) if match else None


def compute_flag(value: Any, reference_range: Optional[str]) -> str:
    """Low / Normal / High for a value against a reference range, else N/A"""
    number = _to_number(value)
    if number is None or not reference_range:
        return "N/A"
    reference = reference_range.replace(",", "")

    match = _BETWEEN.match(reference)
    if match:
        low, high = float(match.group(1)), float(match.group(2))
        if number < low:
            return "Low"
        if number > high:
            return "High"
        return "Normal"

    match = _UPPER.match(reference)
    if match:
        limit = float(match.group(2))
        exceeded = number >= limit if match.group(1) == "<" else number > limit
        return "High" if exceeded else "Normal"

    match = _LOWER.match(reference)
    if match:
        limit = float(match.group(2))
        below = number <= limit if match.group(1) == ">" else number < limit
        return "Low" if below else "Normal"
    return "N/A"


def normalize_results(results: Sequence[Any]) -> List[BloodworkResult]:
    """Coerce raw result items into BloodworkResult, recomputing flags where possible"""
    normalized = []
    for item in results:
        if isinstance(item, BloodworkResult):
            item = item.model_dump()
        if not isinstance(item, dict) or not str(item.get("name") or "").strip():
            logger.warning(f"Skipping bloodwork result without a name: {item!r}")
            continue
        result = BloodworkResult(
            name=str(item["name"]).strip(),
            value=str(item.get("value") or ""),
            unit=str(item.get("unit") or ""),
            referenceRange=str(item.get("referenceRange") or ""),
            flag=item.get("flag") if item.get("flag") in FLAGS else "N/A",
        )
        computed = compute_flag(result.value, result.referenceRange)
        if computed != "N/A":
            result.flag = computed
        normalized.append(result)
    return normalized


def parse_bloodwork_response(text: str) -> ParsedBloodwork:
    if not text or not text.strip():
        raise GeminiServiceError("AI did not return a response for the lab report.")
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?\s*|\s*```$", "", cleaned)
    try:
        raw = json.loads(cleaned)
        results = normalize_results(raw.get("results") or [])
        names = [str(n) for n in raw.get("allTestNames") or []]
        parsed = ParsedBloodwork(results=results, allTestNames=names, summary=str(raw.get("summary") or ""))
    except (json.JSONDecodeError, AttributeError, ValidationError) as e:
        logger.error(f"Malformed bloodwork response: {e}")
        raise GeminiServiceError("AI returned a malformed response. The report might be difficult to read.") from e

    # every extracted result also counts as a test found
    for result in parsed.results:
        if result.name not in parsed.allTestNames:
            parsed.allTestNames.append(result.name)
    return parsed


# ------------------------------------------------------------------------------
# Extraction
# ------------------------------------------------------------------------------
def extract_pdf_text(data: bytes) -> str:
    """Plain text of every page of a PDF"""
    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            text = "\n".join(page.get_text() for page in doc)
    except Exception as e:
        logger.error(f"Failed to read PDF: {e}")
        raise ValueError(f"Could not read PDF file: {e}") from e
    if not text.strip():
        raise ValueError("The PDF contains no extractable text. Try uploading a photo of the report instead.")
    return text[:MAX_PDF_CHARS]


async def _generate(parts: List[Any]) -> ParsedBloodwork:
    config = types.GenerateContentConfig(
        temperature=0.1,
        response_mime_type="application/json",
        max_output_tokens=8192,
        safety_settings=SAFETY_SETTINGS,
    )
    try:
        client = await get_async_client()
        response = await client.aio.models.generate_content(
            model=get_model_name(),
            contents=[types.Content(role="user", parts=parts)],
            config=config,
        )
    except Exception as e:
        raise to_service_error(e) from e
    return parse_bloodwork_response(response.text if response else "")


async def extract_bloodwork_from_image(data: bytes, mime_type: str) -> ParsedBloodwork:
    image_part = file_to_image_part(data, mime_type)
    return await _generate([types.Part(text=create_extraction_prompt("image")), image_part])


async def extract_bloodwork_from_pdf(data: bytes) -> ParsedBloodwork:
    text = extract_pdf_text(data)
    prompt = create_extraction_prompt("text")
    return await _generate([types.Part(text=f"{prompt}\n\n<REPORT_TEXT>\n{text}\n</REPORT_TEXT>")])


async def extract_bloodwork(data: bytes, mime_type: str) -> ParsedBloodwork:
    if mime_type == "application/pdf":
        return await extract_bloodwork_from_pdf(data)
    return await extract_bloodwork_from_image(data, mime_type)


# ------------------------------------------------------------------------------
# Entries
# ------------------------------------------------------------------------------
def _results_payload(results: Sequence[BloodworkResult]) -> List[Dict[str, str]]:
    return [r.model_dump() for r in results]


async def create_bloodwork_entry(user_id: str, parsed: ParsedBloodwork, file_id: Optional[str] = None) -> Document:
    if not user_id:
        raise ValueError("User ID required for bloodwork entry.")
    data: Dict[str, Any] = {
        "userId": user_id,
        "recordedAt": now_iso(),
        "summary": parsed.summary,
        "results": _results_payload(parsed.results),
        "allTestNames": list(parsed.allTestNames),
    }
    if file_id:
        data["fileId"] = file_id
    try:
        store = await get_store()
        return await store.create_document(
            get_settings().bloodworks_collection_id,
            data,
            owner_permissions(user_id, "read", "update", "delete") + [Permission.read(Role.label("doctor"))],
        )
    except Exception as e:
        raise handle_store_error(e, f"creating bloodwork entry for user {user_id}")


async def process_bloodwork_report(
    user_id: str, data: bytes, mime_type: str, file_id: Optional[str] = None
) -> Document:
    """Extract a report with Gemini and save it as a bloodwork entry"""
    if not user_id:
        raise ValueError("User ID required for bloodwork entry.")
    parsed = await extract_bloodwork(data, mime_type)
    logger.info(f"Extracted {len(parsed.results)} bloodwork results for user {user_id}")
    return await create_bloodwork_entry(user_id, parsed, file_id)


async def get_bloodwork_entries(user_id: str, limit: int = 50) -> List[Document]:
    if not user_id:
        return []
    try:
        store = await get_store()
        page = await store.list_documents(
            get_settings().bloodworks_collection_id,
            [Query.equal("userId", user_id), Query.order_desc("recordedAt"), Query.limit(limit)],
        )
        return page.documents
    except Exception as e:
        handle_store_error(e, f"fetching bloodwork entries for user {user_id}")
        return []


async def update_bloodwork_results(document_id: str, results: Sequence[Any]) -> Document:
    """Replace an entry's results after the user corrected them"""
    if not document_id:
        raise ValueError("Document ID required for bloodwork update.")
    if results is None or isinstance(results, (str, bytes)):
        raise ValueError("Results must be a list of biomarker objects.")
    normalized = normalize_results(results)
    collection_id = get_settings().bloodworks_collection_id
    try:
        store = await get_store()
        entry = await store.get_document(collection_id, document_id)
        names = list(entry.get("allTestNames") or [])
        names += [r.name for r in normalized if r.name not in names]
        return await store.update_document(
            collection_id, document_id, {"results": _results_payload(normalized), "allTestNames": names}
        )
    except Exception as e:
        raise handle_store_error(e, f"updating bloodwork entry {document_id}")


async def delete_bloodwork_entry(document_id: str):
    if not document_id:
        raise ValueError("Document ID required for deletion.")
    try:
        store = await get_store()
        await store.delete_document(get_settings().bloodworks_collection_id, document_id)
    except Exception as e:
        raise handle_store_error(e, f"deleting bloodwork entry {document_id}")
