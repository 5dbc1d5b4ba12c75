"""
Face photo analysis: Google Vision face detection followed by an OpenAI
vision model that turns the photo and the detection data into wellness
insights.

The LLM output is treated as an opaque document. Only ``preview_insights``
is normalised; it is what the free preview shows.
"""
import base64
import binascii
import json
import logging
import re
from typing import List, Optional, Tuple

import requests
from openai import OpenAI, OpenAIError

from .config import (
    EXTERNAL_API_TIMEOUT,
    GOOGLE_VISION_API_KEY,
    GOOGLE_VISION_URL,
    MAX_IMAGE_BYTES,
    OPENAI_API_KEY,
    OPENAI_MODEL,
)

logger = logging.getLogger(__name__)

# Initialize OpenAI client
openai_client = OpenAI(api_key=OPENAI_API_KEY) if OPENAI_API_KEY else None

DATA_URL_PATTERN = re.compile(r'^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^,;]*)*),(?P<payload>.*)$', re.S)

FACE_LIKELIHOOD_FIELDS = [
    ('Joy', 'joyLikelihood'),
    ('Sorrow', 'sorrowLikelihood'),
    ('Anger', 'angerLikelihood'),
    ('Surprise', 'surpriseLikelihood'),
    ('Under-exposed', 'underExposedLikelihood'),
    ('Blurred', 'blurredLikelihood'),
    ('Headwear', 'headwearLikelihood'),
]


# ==================== ERRORS ====================

class AnalysisError(Exception):
    """Base class for failures while analysing a photo"""


class InvalidImageError(AnalysisError):
    pass


class ImageTooLargeError(AnalysisError):
    pass


class AnalysisConfigError(AnalysisError):
    pass


class VisionAPIError(AnalysisError):
    def __init__(self, message: str, status_code: int = None, auth_failed: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.auth_failed = auth_failed


class LLMServiceError(AnalysisError):
    pass


class AnalysisParseError(AnalysisError):
    pass


# ==================== IMAGE INPUT ====================

def split_data_url(image_data: str) -> Tuple[str, str]:
    """
    Split a ``data:image/...;base64,<payload>`` URL into its content type and
    base64 payload. The payload is decoded once to validate it and enforce the
    upload size limit.
    """
    if not image_data or ',' not in image_data:
        raise InvalidImageError("Invalid image data format")

    match = DATA_URL_PATTERN.match(image_data.strip())
    if match:
        content_type = match.group('mime') or 'image/jpeg'
        payload = match.group('payload').strip()
    else:
        content_type = 'image/jpeg'
        payload = image_data.split(',', 1)[1].strip()

    if not payload:
        raise InvalidImageError("Invalid image data format")
    if not content_type.startswith('image/'):
        raise InvalidImageError("Only image uploads are supported")

    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidImageError("Image data is not valid base64")

    if len(raw) > MAX_IMAGE_BYTES:
        raise ImageTooLargeError(
            f"Image size must be less than {MAX_IMAGE_BYTES // (1024 * 1024)}MB"
        )

    return content_type, payload


def ensure_configured():
    if not GOOGLE_VISION_API_KEY:
        logger.error("GOOGLE_VISION_API_KEY environment variable is not set")
        raise AnalysisConfigError("Google Vision API key not configured")
    if not OPENAI_API_KEY:
        logger.error("OPENAI_API_KEY environment variable is not set")
        raise AnalysisConfigError("OpenAI API key not configured")


# ==================== GOOGLE VISION ====================

def detect_faces(base64_image: str) -> List[dict]:
    """Run Vision face detection and return the face annotations (possibly empty)"""
    body = {
        'requests': [
            {
                'image': {'content': base64_image},
                'features': [
                    {'type': 'FACE_DETECTION', 'maxResults': 1},
                    {'type': 'SAFE_SEARCH_DETECTION', 'maxResults': 1},
                ],
            }
        ]
    }

    try:
        response = requests.post(
            GOOGLE_VISION_URL,
            params={'key': GOOGLE_VISION_API_KEY},
            json=body,
            timeout=EXTERNAL_API_TIMEOUT,
        )
    except requests.RequestException as e:
        logger.error(f"Google Vision request failed: {str(e)}")
        raise VisionAPIError("Failed to reach Google Vision API")

    logger.info(f"Google Vision API response status: {response.status_code}")

    if response.status_code in (401, 403):
        logger.error(f"Google Vision API auth error: {response.text[:300]}")
        raise VisionAPIError(
            "Google Vision API authentication failed",
            status_code=response.status_code,
            auth_failed=True,
        )

    if response.status_code != 200:
        logger.error(f"Google Vision API error: {response.text[:300]}")
        raise VisionAPIError(
            f"Google Vision API returned {response.status_code}",
            status_code=response.status_code,
        )

    data = response.json()
    responses = data.get('responses') or [{}]
    return responses[0].get('faceAnnotations') or []


def describe_face(face_annotations: Optional[List[dict]]) -> str:
    """Render the first face annotation as prompt text"""
    if not face_annotations:
        return "No face detected in the image."

    face = face_annotations[0]
    confidence = float(face.get('detectionConfidence') or 0) * 100
    lines = [
        "Face detected with the following characteristics:",
        f"- Detection confidence: {confidence:.1f}%",
    ]
    for label, key in FACE_LIKELIHOOD_FIELDS:
        lines.append(f"- {label} likelihood: {face.get(key) or 'UNKNOWN'}")
    return '\n'.join(lines)


# ==================== LLM INSIGHTS ====================

SYSTEM_PROMPT = """You are a holistic wellness advisor combining the views of a physiognomist, a nutritionist, a psychosomatic coach and a women's health specialist.
You look at a face photo and describe cosmetic and lifestyle observations only. You never diagnose disease.

Respond ONLY with valid JSON. No markdown, no explanation, just JSON."""

RESPONSE_SHAPE = """{
  "perceived_age": 30,
  "confidence": 0.8,
  "visual_age_analysis": "why the face reads as this age",
  "deficiencies": {"skin_tone": "", "eyes": "", "jawline": "", "lips": "", "cheeks": "", "nutrient_flags": []},
  "food_intolerances": {"signs_present": false, "potential_triggers": [], "recommendations": ""},
  "womens_health": {"hormonal_indicators": "", "recommendations": ""},
  "psycho_emotional_states": {"observed_states": [], "stress_indicators": "", "energy_levels": ""},
  "internal_conflicts": {"personality_traits": [], "potential_conflicts": [], "behavioral_patterns": ""},
  "recommendations": {
    "diet": {"eliminate": [], "add": [], "supplements": []},
    "lifestyle": {"daily_habits": [], "exercise": "", "stress_management": []},
    "rest": {"sleep_hygiene": [], "recovery": []},
    "mindset": {"mental_practices": [], "emotional_work": [], "thinking_patterns": []}
  },
  "preview_insights": [{"star_rating": 4, "emotional_hook": "", "conversion_tease": "", "category": "skin"}],
  "daily_rituals": [{"category": "", "rituals": [{"title": "", "description": ""}]}],
  "product_recommendations": [{"name": "", "dosage": "", "reason": "", "expected_result": "", "price_band": "", "timeline": ""}]
}"""


def build_user_prompt(face_description: str) -> str:
    return f"""Analyze this face photo.

Face detection data:
{face_description}

Cover: perceived age, visible signs of possible deficiencies (skin tone, eyes, jawline, lips, cheeks), possible food intolerance signs, women's health pointers, psycho-emotional states, personality traits and inner conflicts, and what to change in diet, lifestyle, rest and mindset.
Give 3-5 preview_insights (categories such as age, skin, stress, energy, sleep) that tease the full plan without giving it away.

Return JSON with exactly this shape:
{RESPONSE_SHAPE}"""


def parse_json_response(response: str) -> Optional[dict]:
    """Parse JSON from AI response with multiple fallback strategies"""
    if not response:
        return None

    code_block_match = re.search(r'```(?:json)?\s*([\s\S]*?)```', response)
    if code_block_match:
        try:
            return json.loads(code_block_match.group(1).strip())
        except json.JSONDecodeError:
            pass

    json_match = re.search(r'\{[\s\S]*\}', response)
    if json_match:
        try:
            return json.loads(json_match.group())
        except json.JSONDecodeError:
            pass

    try:
        cleaned = response.strip()
        if cleaned.startswith('{'):
            return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    return None


def normalize_preview_insights(raw) -> List[dict]:
    """Keep well-formed preview cards and clamp their star rating to 1-5"""
    if not isinstance(raw, list):
        return []

    insights = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        rating = item.get('star_rating', 3)
        if not isinstance(rating, (int, float)) or isinstance(rating, bool):
            rating = 3
        insights.append({
            'star_rating': int(max(1, min(5, round(rating)))),
            'emotional_hook': str(item.get('emotional_hook') or ''),
            'conversion_tease': str(item.get('conversion_tease') or ''),
            'category': str(item.get('category') or 'general'),
        })
    return insights


def generate_wellness_insights(face_annotations: List[dict], base64_image: str,
                               content_type: str = 'image/jpeg') -> dict:
    if not openai_client:
        raise AnalysisConfigError("OpenAI API key not configured")

    try:
        response = openai_client.chat.completions.create(
            model=OPENAI_MODEL,
            temperature=0.7,
            max_tokens=4000,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": build_user_prompt(describe_face(face_annotations))},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:{content_type};base64,{base64_image}",
                                "detail": "high",
                            },
                        },
                    ],
                },
            ],
        )
    except OpenAIError as e:
        logger.error(f"OpenAI API error: {str(e)}")
        raise LLMServiceError(f"OpenAI API error: {str(e)}")

    response_text = response.choices[0].message.content if response.choices else None
    if not response_text:
        raise AnalysisParseError("No analysis content received from OpenAI")

    logger.info(f"AI response length: {len(response_text)}")

    result = parse_json_response(response_text)
    if not isinstance(result, dict):
        logger.warning(f"Could not parse AI response: {response_text[:300]}")
        raise AnalysisParseError("Failed to parse analysis results")

    return result


def analyze_photo(image_data: str) -> dict:
    """
    Full analysis pipeline for an uploaded data URL.

    Returns the LLM document with ``preview_insights`` normalised. Raises an
    ``AnalysisError`` subclass on any failure.
    """
    content_type, base64_image = split_data_url(image_data)
    ensure_configured()

    face_annotations = detect_faces(base64_image)
    logger.info(f"Face annotations found: {bool(face_annotations)}")

    analysis_data = generate_wellness_insights(face_annotations, base64_image, content_type)
    analysis_data['preview_insights'] = normalize_preview_insights(
        analysis_data.get('preview_insights')
    )
    return analysis_data
