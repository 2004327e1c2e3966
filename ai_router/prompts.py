"""
Prompt templates for the resume operations and response post-processing.
"""

import json
import re
from dataclasses import dataclass
from typing import Any

from .models import OperationKind


class PayloadError(ValueError):
    """Operation payload is missing required fields."""
    pass


PARSE_RESUME_PROMPT = """You are an expert resume parser. Extract and structure the following resume text into a JSON format.

IMPORTANT RULES:
1. Extract ALL information accurately from the resume
2. For dates, use format "Month YYYY" (e.g., "Jan 2024")
3. Parse bullet points carefully, keeping all details
4. If information is missing, use empty strings or empty arrays
5. Preserve all contact information found

Required JSON structure:
{{
  "personalInfo": {{"fullName": "", "email": "", "phone": "", "location": "", "linkedin": "", "github": "", "website": ""}},
  "summary": "",
  "experience": [{{"company": "", "position": "", "location": "", "startDate": "", "endDate": "", "current": false, "bullets": []}}],
  "education": [{{"institution": "", "degree": "", "field": "", "location": "", "startDate": "", "endDate": "", "gpa": ""}}],
  "skills": [{{"category": "", "items": []}}],
  "projects": [{{"name": "", "description": "", "technologies": [], "link": "", "bullets": []}}],
  "certifications": [{{"name": "", "issuer": "", "date": "", "link": ""}}]
}}

Resume Text:
{resume_text}

Return ONLY valid JSON without any markdown formatting or code blocks."""

ENHANCE_CONTENT_PROMPT = """You are an expert resume writer. Enhance the following resume content to make it more ATS-friendly and impactful.

Guidelines:
- Start bullets with strong action verbs
- Quantify achievements where the original text allows it
- Keep the original meaning and do not invent facts
- Keep each bullet concise (one or two lines)
{custom_instructions}
Full Resume Context:
{resume_context}

Section Type: {section_type}
Content to enhance:
{content}

Return enhanced content in the same structure (array of strings for bullets, single string for summary).
Return ONLY the enhanced content without explanations or additional formatting."""

SUMMARY_PROMPT = """You are an expert resume writer. Write a professional summary of 3-4 sentences for the candidate below.
Highlight years of experience, core skills and the most notable achievements. Use an ATS-friendly tone.

Resume Data:
{resume_context}

Return ONLY the summary text."""

CATEGORIZE_SKILLS_PROMPT = """Categorize the following skills into logical groups (e.g., "Programming Languages", "Frameworks", "Tools", "Soft Skills").

Skills:
{skills_text}

Return ONLY valid JSON in this format:
[{{"category": "Category Name", "items": ["skill1", "skill2"]}}]"""

JOB_MATCH_PROMPT = """You are an ATS (Applicant Tracking System) expert. Compare the resume with the job description.

Resume:
{resume_text}

Job Description:
{job_description}

Return ONLY valid JSON in this format:
{{
  "matchScore": 0,
  "matchedKeywords": [],
  "missingKeywords": [],
  "strengths": [],
  "improvements": [],
  "summary": ""
}}"""

COVER_LETTER_PROMPT = """You are an expert career coach. Write a tailored, professional cover letter for the candidate below.

Company: {company_name}

Job Description:
{job_description}

Candidate Resume:
{resume_context}

Write 3-4 paragraphs. Do not include placeholders such as [Your Name]. Return ONLY the cover letter text."""


@dataclass(frozen=True)
class OperationSpec:
    """How to build the prompt for one operation and read its answer."""
    template: str
    required: tuple[str, ...]
    expects_json: bool
    max_output_tokens: int = 4096


OPERATION_SPECS: dict[OperationKind, OperationSpec] = {
    OperationKind.PARSE: OperationSpec(PARSE_RESUME_PROMPT, ("resume_text",), True),
    OperationKind.ENHANCE: OperationSpec(ENHANCE_CONTENT_PROMPT, ("content",), False, 2048),
    OperationKind.SUMMARIZE: OperationSpec(SUMMARY_PROMPT, ("resume_data",), False, 1024),
    OperationKind.CATEGORIZE: OperationSpec(CATEGORIZE_SKILLS_PROMPT, ("skills_text",), True, 2048),
    OperationKind.MATCH: OperationSpec(
        JOB_MATCH_PROMPT, ("resume_text", "job_description"), True, 2048
    ),
    OperationKind.GENERATE: OperationSpec(
        COVER_LETTER_PROMPT, ("resume_data", "job_description", "company_name"), False, 2048
    ),
}


def _context(value: Any) -> str:
    if value is None:
        return "(not provided)"
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, indent=2)


def validate_payload(kind: OperationKind, payload: dict[str, Any]) -> None:
    """
    Raises:
        PayloadError: If a required field is missing or empty
    """
    spec = OPERATION_SPECS[kind]
    missing = [
        name for name in spec.required
        if payload.get(name) is None or (isinstance(payload.get(name), str) and not payload[name].strip())
    ]
    if missing:
        raise PayloadError(f"{kind.value} requires: {', '.join(missing)}")


def build_prompt(kind: OperationKind, payload: dict[str, Any]) -> str:
    """Render the prompt for an operation from its payload."""
    validate_payload(kind, payload)
    spec = OPERATION_SPECS[kind]
    custom = payload.get("custom_prompt") or ""
    values = {
        "resume_text": payload.get("resume_text", ""),
        "content": _context(payload.get("content")),
        "section_type": payload.get("section_type", "experience"),
        "resume_context": _context(payload.get("resume_data")),
        "custom_instructions": f"- Additional instructions: {custom}\n" if custom else "",
        "skills_text": _context(payload.get("skills_text")),
        "job_description": payload.get("job_description", ""),
        "company_name": payload.get("company_name", ""),
    }
    return spec.template.format(**values)


_FENCE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding Markdown code block, if any."""
    cleaned = text.strip()
    match = _FENCE.match(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def parse_response(kind: OperationKind, text: str) -> Any:
    """
    Turn the raw model text into the operation's result.

    Structured operations return parsed JSON. Enhancement returns a list when
    the model answered with a JSON array, otherwise the plain text.

    Raises:
        ValueError: If a structured operation did not return valid JSON
    """
    cleaned = strip_code_fences(text)
    if OPERATION_SPECS[kind].expects_json:
        return json.loads(cleaned)
    if kind is OperationKind.ENHANCE and cleaned.startswith("["):
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            return cleaned
    return cleaned


def expects_json(kind: OperationKind) -> bool:
    return OPERATION_SPECS[kind].expects_json
