"""Prompt templates and output schemas for agent tasks.

Each task type has a system prompt, a user template filled from the task
payload, and a pydantic model the parsed response must satisfy.
"""
from __future__ import annotations
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

# Appended to the prompt when the first response was not usable JSON
JSON_ONLY_SUFFIX = (
    "\nIMPORTANT: Your previous response was not valid JSON. Respond with ONLY a valid JSON "
    "object matching the required schema. No markdown code fences, no commentary, no "
    "explanatory text. Start with { and end with }."
)

SEMANTIC_CLAIM_TYPES = ("behavior", "architecture", "config", "convention", "environment")
MAX_EXTRACTED_CLAIMS = 50


# ---------- output schemas ----------

class VerifyOutput(BaseModel):
    verdict: Literal["verified", "drifted", "uncertain"]
    confidence: float = Field(..., ge=0.0, le=1.0)
    severity: Optional[Literal["high", "medium", "low"]] = None
    reasoning: str = Field(..., min_length=1, max_length=1000)
    specific_mismatch: Optional[str] = None
    suggested_fix: Optional[str] = None
    evidence_files: list[str] = Field(default_factory=list)


class ClassificationSelection(BaseModel):
    code_file: str = Field(..., min_length=1)
    code_entity_id: Optional[str] = None
    confidence: float = Field(0.5, ge=0.0, le=1.0)


class ClassificationOutput(BaseModel):
    selected: list[ClassificationSelection] = Field(default_factory=list)
    reasoning: str = Field("", max_length=1000)


class SuggestedFix(BaseModel):
    file_path: str = Field(..., min_length=1)
    line_start: int = Field(..., gt=0)
    line_end: int = Field(..., gt=0)
    new_text: str = Field(..., min_length=1)
    explanation: str = Field(..., min_length=1, max_length=500)


class FixOutput(BaseModel):
    suggested_fix: SuggestedFix


class PostCheckOutput(BaseModel):
    outcome: Literal["confirmed", "contradicted", "uncertain"]
    reasoning: str = Field(..., min_length=1, max_length=1000)


class ExtractedClaim(BaseModel):
    claim_text: str = Field(..., min_length=1)
    claim_type: Literal["behavior", "architecture", "config", "convention", "environment"]
    source_file: str = Field(..., min_length=1)
    source_line: int = Field(..., gt=0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    keywords: list[str] = Field(..., min_length=1, max_length=5)


class ExtractOutput(BaseModel):
    claims: list[ExtractedClaim] = Field(default_factory=list)


# ---------- prompts ----------

VERIFY_PATH1_SYSTEM = """You are a documentation accuracy verifier for a software project. Compare a documentation claim against source code evidence and decide whether the claim is still accurate.

Rules:
1. Judge FACTUAL accuracy only, not style or completeness.
2. Documentation only needs to be correct about what it does describe.
3. Minor simplifications in wording are acceptable.
4. A partially accurate claim is DRIFTED; say which part is wrong.
5. If the evidence does not settle it, answer UNCERTAIN. Do not guess.
6. Only reference code shown below. Do not invent paths, names or code.
7. For DRIFTED: severity high = misleading enough to cause errors, medium = outdated detail, low = minor. Give specific_mismatch and suggested_fix.

Respond with ONLY a JSON object matching the required schema. No other text."""

VERIFY_PATH1_PROMPT = '''Verify this documentation claim against the source code evidence.

<claim file="{source_file}" line="{line_number}" type="{claim_type}">
{claim_text}
</claim>

<evidence>
{evidence}
</evidence>

Respond as JSON:
{{
  "verdict": "verified" | "drifted" | "uncertain",
  "confidence": <0.0 to 1.0>,
  "severity": "high" | "medium" | "low" | null,
  "reasoning": "1-2 sentence explanation of your verdict",
  "specific_mismatch": "what exactly is wrong (null if verified or uncertain)",
  "suggested_fix": "corrected documentation text (null if verified or uncertain)",
  "evidence_files": ["files examined"]
}}'''

VERIFY_PATH2_SYSTEM = """You are a documentation accuracy verifier operating as a code exploration agent with read access to the repository. Decide whether a documentation claim is accurate by exploring the relevant code.

Rules:
1. Start from the file hints but follow imports and related files as needed.
2. Judge FACTUAL accuracy only. Minor simplifications are acceptable.
3. A partially accurate claim is DRIFTED.
4. Without enough evidence, answer UNCERTAIN.
5. Only reference files you actually read, and list all of them in evidence_files.
6. Stay within the file and token limits given.

Respond with ONLY a JSON object matching the required schema. No other text."""

VERIFY_PATH2_PROMPT = '''Verify this documentation claim by exploring the codebase.

<claim file="{source_file}" line="{line_number}" type="{claim_type}">
{claim_text}
</claim>

<routing_context>
Routing reason: {routing_reason}
</routing_context>

<file_hints>
{evidence}
</file_hints>

<constraints>
Maximum files to examine: {max_files}
Maximum evidence tokens: {token_budget}
</constraints>

Explore the code and respond as JSON:
{{
  "verdict": "verified" | "drifted" | "uncertain",
  "confidence": <0.0 to 1.0>,
  "severity": "high" | "medium" | "low" | null,
  "reasoning": "1-3 sentences with specific code references",
  "specific_mismatch": "what exactly is wrong (null if verified or uncertain)",
  "suggested_fix": "corrected documentation text (null if verified or uncertain)",
  "evidence_files": ["all files you actually examined"]
}}'''

CLASSIFY_SYSTEM = """You map documentation claims to the source files that implement what they describe. Choose only from files you can confirm exist. Prefer fewer, more certain files.

Respond with ONLY a JSON object. No other text."""

CLASSIFY_PROMPT = '''Find the code this documentation claim is about.

<claim file="{source_file}" type="{claim_type}">
{claim_text}
</claim>

Keywords: {keywords}

Candidate files (may be empty or incomplete):
{candidate_files}

Select at most {max_files} files. Respond as JSON:
{{
  "selected": [{{"code_file": "path/to/file", "code_entity_id": null, "confidence": <0.0 to 1.0>}}],
  "reasoning": "one sentence"
}}'''

FIX_SYSTEM = """You are a documentation editor. Given a claim that has drifted from the code, write the corrected text.

Rules:
1. Keep the original tone, style and level of detail.
2. The fix must be a drop-in replacement with the same scope.
3. Only use facts from the mismatch description and evidence.
4. If a single value is wrong (version, name, path), replace only that value.
5. Keep it concise.

Respond with ONLY a JSON object. No other text."""

FIX_PROMPT = '''Generate corrected documentation for this drifted claim.

<finding>
  <claim file="{source_file}" line="{line_number}">{claim_text}</claim>
  <mismatch>{mismatch}</mismatch>
  <evidence_files>{evidence_files}</evidence_files>
</finding>

Respond as JSON:
{{
  "suggested_fix": {{
    "file_path": "{source_file}",
    "line_start": {line_number},
    "line_end": {line_number},
    "new_text": "the corrected documentation text",
    "explanation": "brief explanation of what changed"
  }}
}}'''

POST_CHECK_SYSTEM = """You check whether a proposed documentation fix is consistent with the code. Answer "confirmed" only when the evidence supports the new text.

Respond with ONLY a JSON object. No other text."""

POST_CHECK_PROMPT = '''Check this documentation fix against the code.

Original claim: "{claim_text}"
Proposed fix: "{suggested_fix}"

<evidence>
{evidence}
</evidence>

Respond as JSON:
{{
  "outcome": "confirmed" | "contradicted" | "uncertain",
  "reasoning": "one sentence"
}}'''

FEEDBACK_SYSTEM = """You interpret developer feedback on documentation drift findings and decide whether future findings should be suppressed, and how broadly.

Scopes, narrowest first: "claim" (this finding only), "file" (every finding in a doc file), "claim_type" (a whole category), "pattern" (a regex on claim text). Prefer the narrowest scope that fits. Answer "no_action" when the feedback does not ask to silence anything.

Respond with ONLY a JSON object. No other text."""

FEEDBACK_PROMPT = '''Interpret this feedback.

Finding ({claim_type}) in {source_file}: "{claim_text}"
Feedback type: {feedback_type}
Developer comment: "{free_text}"

Respond as JSON:
{{
  "action": "suppress" | "no_action",
  "scope": "claim" | "file" | "claim_type" | "pattern" | null,
  "target": "claim id, file path, claim type or regex (null for this claim)",
  "reason": "short reason",
  "duration_days": <days, or null for permanent>
}}'''

EXTRACT_SYSTEM = """You extract verifiable factual claims about a codebase from a documentation section.

Extract ONLY semantic claims: behavior, architecture, config, convention, environment. File paths, CLI commands, dependency versions, API routes and code examples are extracted elsewhere; skip them.

Rules:
1. Only claims about what the code IS or DOES now. Skip plans and opinions.
2. Each claim must be independently verifiable and name a specific code construct.
3. No duplicates. Skip vague sentences.
4. Give 1-5 keywords per claim.

Return a JSON object matching the schema. If nothing is verifiable, return an empty claims array."""

EXTRACT_PROMPT = '''Project language: {language}
Frameworks: {frameworks}

Documentation file: {source_file}
Chunk heading: {heading}
Start line: {start_line}

---
{content}
---

Respond as JSON:
{{
  "claims": [{{"claim_text": "...", "claim_type": "behavior", "source_file": "{source_file}", "source_line": <line>, "confidence": <0.0 to 1.0>, "keywords": ["..."]}}]
}}'''


def _claim_fields(payload: dict[str, Any]) -> dict[str, Any]:
    claim = payload.get("claim") or {}
    return {
        "source_file": claim.get("source_file", ""),
        "line_number": claim.get("line_number", 1),
        "claim_type": claim.get("claim_type", ""),
        "claim_text": claim.get("claim_text", ""),
    }


def build_verify_prompt(payload: dict[str, Any]) -> tuple[str, str]:
    """(system, user) for a verification task, by routing path."""
    evidence = (payload.get("evidence") or {}).get("formatted_evidence", "")
    if payload.get("verification_path") == 1:
        return VERIFY_PATH1_SYSTEM, VERIFY_PATH1_PROMPT.format(evidence=evidence, **_claim_fields(payload))
    return VERIFY_PATH2_SYSTEM, VERIFY_PATH2_PROMPT.format(
        evidence=evidence,
        routing_reason=payload.get("routing_reason", "unknown"),
        max_files=payload.get("max_files", 10),
        token_budget=payload.get("token_budget", 8000),
        **_claim_fields(payload),
    )


def build_classification_prompt(payload: dict[str, Any]) -> tuple[str, str]:
    candidates = payload.get("candidate_files") or []
    return CLASSIFY_SYSTEM, CLASSIFY_PROMPT.format(
        source_file=payload.get("source_file", ""),
        claim_type=payload.get("claim_type", ""),
        claim_text=payload.get("claim_text", ""),
        keywords=", ".join(payload.get("keywords") or []) or "(none)",
        candidate_files="\n".join(f"- {f}" for f in candidates) or "(none)",
        max_files=payload.get("max_files", 10),
    )


def build_fix_prompt(payload: dict[str, Any]) -> tuple[str, str]:
    finding = payload.get("finding") or {}
    return FIX_SYSTEM, FIX_PROMPT.format(
        source_file=finding.get("source_file", ""),
        line_number=finding.get("line_number", 1) or 1,
        claim_text=finding.get("claim_text", ""),
        mismatch=finding.get("mismatch_description", ""),
        evidence_files=", ".join(finding.get("evidence_files") or []),
    )


def build_post_check_prompt(payload: dict[str, Any]) -> tuple[str, str]:
    return POST_CHECK_SYSTEM, POST_CHECK_PROMPT.format(
        claim_text=payload.get("claim_text", ""),
        suggested_fix=payload.get("suggested_fix", ""),
        evidence=payload.get("evidence", "") or "(none)",
    )


def build_feedback_prompt(payload: dict[str, Any]) -> tuple[str, str]:
    return FEEDBACK_SYSTEM, FEEDBACK_PROMPT.format(
        claim_type=payload.get("claim_type") or "unknown",
        source_file=payload.get("source_file") or "unknown",
        claim_text=payload.get("claim_text") or "",
        feedback_type=payload.get("feedback_type", ""),
        free_text=payload.get("free_text", ""),
    )


def build_extract_prompt(payload: dict[str, Any]) -> tuple[str, str]:
    context = payload.get("project_context") or {}
    docs = payload.get("doc_files") or [{}]
    doc = docs[0]
    return EXTRACT_SYSTEM, EXTRACT_PROMPT.format(
        language=context.get("language", "Unknown"),
        frameworks=", ".join(context.get("frameworks") or []),
        source_file=doc.get("source_file", "unknown"),
        heading=doc.get("chunk_heading", ""),
        start_line=doc.get("start_line", 1),
        content=doc.get("content", ""),
    )
