"""
Pydantic models for claims, mappings, verification results and learning records.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from docdrift.errors import ExtractionError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ============ Enums ============

class ClaimType(str, Enum):
    """Kinds of factual assertion a document can make."""
    PATH_REFERENCE = "path_reference"
    DEPENDENCY_VERSION = "dependency_version"
    COMMAND = "command"
    API_ROUTE = "api_route"
    CODE_EXAMPLE = "code_example"
    BEHAVIOR = "behavior"
    ARCHITECTURE = "architecture"
    CONFIG = "config"
    CONVENTION = "convention"
    ENVIRONMENT = "environment"
    URL_REFERENCE = "url_reference"


class Testability(str, Enum):
    SYNTACTIC = "syntactic"
    SEMANTIC = "semantic"
    UNTESTABLE = "untestable"


class ExtractionMethod(str, Enum):
    REGEX = "regex"
    HEURISTIC = "heuristic"
    LLM = "llm"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    DRIFTED = "drifted"
    UNCERTAIN = "uncertain"


class Verdict(str, Enum):
    VERIFIED = "verified"
    DRIFTED = "drifted"
    UNCERTAIN = "uncertain"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class EntityType(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    ROUTE = "route"
    TYPE = "type"
    CONFIG = "config"


class MappingMethod(str, Enum):
    DIRECT_REFERENCE = "direct_reference"
    SYMBOL_SEARCH = "symbol_search"
    SEMANTIC_SEARCH = "semantic_search"
    LLM_ASSISTED = "llm_assisted"
    MANUAL = "manual"
    CO_CHANGE = "co_change"


class MappingStatus(str, Enum):
    """Status of a claim's candidate set as a whole."""
    MAPPED = "mapped"
    UNMAPPED = "unmapped"
    AMBIGUOUS_SUFFIX_MATCH = "ambiguous_suffix_match"
    MANUAL = "manual"


class TaskType(str, Enum):
    CLAIM_EXTRACTION = "claim_extraction"
    VERIFICATION = "verification"
    CLAIM_CLASSIFICATION = "claim_classification"
    FIX_GENERATION = "fix_generation"
    POST_CHECK = "post_check"
    FEEDBACK_INTERPRETATION = "feedback_interpretation"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class SuppressionScope(str, Enum):
    CLAIM = "claim"
    FILE = "file"
    CLAIM_TYPE = "claim_type"
    PATTERN = "pattern"


class RuleSource(str, Enum):
    QUICK_PICK = "quick_pick"
    COUNT_BASED = "count_based"
    AGENT_INTERPRETED = "agent_interpreted"


class FeedbackType(str, Enum):
    THUMBS_UP = "thumbs_up"
    THUMBS_DOWN = "thumbs_down"
    FIX_ACCEPTED = "fix_accepted"
    FIX_DISMISSED = "fix_dismissed"
    ALL_DISMISSED = "all_dismissed"


class QuickPickReason(str, Enum):
    NOT_RELEVANT_TO_THIS_FILE = "not_relevant_to_this_file"
    INTENTIONALLY_DIFFERENT = "intentionally_different"
    WILL_FIX_LATER = "will_fix_later"
    DOCS_ARE_ASPIRATIONAL = "docs_are_aspirational"
    THIS_IS_CORRECT = "this_is_correct"


class ScanStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ============ Extracted values (one variant per claim type) ============

class _ValueBase(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PathReferenceValue(_ValueBase):
    type: Literal["path_reference"] = "path_reference"
    path: str = Field(..., min_length=1)
    anchor: Optional[str] = None


class DependencyVersionValue(_ValueBase):
    type: Literal["dependency_version"] = "dependency_version"
    package: str = Field(..., min_length=1)
    version: Optional[str] = None


class CommandValue(_ValueBase):
    type: Literal["command"] = "command"
    runner: Optional[str] = None
    script: str = Field(..., min_length=1)


class ApiRouteValue(_ValueBase):
    type: Literal["api_route"] = "api_route"
    method: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return v.upper()


class CodeExampleValue(_ValueBase):
    type: Literal["code_example"] = "code_example"
    language: Optional[str] = None
    imports: list[str] = Field(default_factory=list)
    symbols: list[str] = Field(default_factory=list)
    prose_signature: bool = False
    function_name: Optional[str] = None
    signature: Optional[str] = None


class BehaviorValue(_ValueBase):
    type: Literal["behavior"] = "behavior"
    subject: Optional[str] = None


class ArchitectureValue(_ValueBase):
    type: Literal["architecture"] = "architecture"
    subject: Optional[str] = None


class ConfigValue(_ValueBase):
    type: Literal["config"] = "config"
    key: Optional[str] = None
    env_var: Optional[str] = None
    value: Optional[str] = None


class ConventionValue(_ValueBase):
    type: Literal["convention"] = "convention"
    framework: Optional[str] = None
    rule: Optional[str] = None


class EnvironmentValue(_ValueBase):
    type: Literal["environment"] = "environment"
    runtime: Optional[str] = None
    version: Optional[str] = None
    env_var: Optional[str] = None


class UrlReferenceValue(_ValueBase):
    type: Literal["url_reference"] = "url_reference"
    url: str = Field(..., min_length=1)


ExtractedValue = Annotated[
    Union[
        PathReferenceValue,
        DependencyVersionValue,
        CommandValue,
        ApiRouteValue,
        CodeExampleValue,
        BehaviorValue,
        ArchitectureValue,
        ConfigValue,
        ConventionValue,
        EnvironmentValue,
        UrlReferenceValue,
    ],
    Field(discriminator="type"),
]

_extracted_value_adapter: TypeAdapter = TypeAdapter(ExtractedValue)


def parse_extracted_value(claim_type: str, raw: Any) -> ExtractedValue:
    """Validate a raw extracted_value payload against its claim type.

    Args:
        claim_type: The claim's type, used as the union discriminator
        raw: Dict or JSON string from the extractor

    Returns:
        The typed variant

    Raises:
        ExtractionError: If the payload does not fit the claim type
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"extracted_value is not valid JSON: {e}") from e
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ExtractionError(f"extracted_value must be an object, got {type(raw).__name__}")

    data = dict(raw)
    declared = data.get("type")
    if declared and declared != claim_type:
        raise ExtractionError(
            f"extracted_value type '{declared}' does not match claim_type '{claim_type}'"
        )
    data["type"] = claim_type

    try:
        return _extracted_value_adapter.validate_python(data)
    except ValidationError as e:
        raise ExtractionError(f"Invalid extracted_value for {claim_type}: {e}") from e


def decode_json(value: Any) -> Any:
    """asyncpg hands back jsonb and vector columns as strings."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def record_to_dict(row: Any) -> dict[str, Any]:
    """Convert an asyncpg Record to a plain dict with UUIDs stringified."""
    data = dict(row)
    for key, value in data.items():
        if isinstance(value, uuid.UUID):
            data[key] = str(value)
    return data


# ============ Database Models ============

class Claim(BaseModel):
    """An extracted, typed factual assertion from a document."""
    model_config = ConfigDict(use_enum_values=True)

    id: str
    repo_id: str
    source_file: str
    line_number: int = 1
    claim_text: str
    claim_type: ClaimType
    testability: Testability = Testability.SYNTACTIC
    extracted_value: ExtractedValue
    keywords: list[str] = Field(default_factory=list)
    extraction_confidence: float = Field(1.0, ge=0.0, le=1.0)
    extraction_method: ExtractionMethod = ExtractionMethod.REGEX
    embedding: Optional[list[float]] = None
    parent_claim_id: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    last_verification_result_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def inject_value_type(cls, data: Any) -> Any:
        """Fill the extracted_value discriminator from claim_type."""
        if isinstance(data, dict):
            claim_type = data.get("claim_type")
            if isinstance(claim_type, Enum):
                claim_type = claim_type.value
            value = decode_json(data.get("extracted_value"))
            if value is None:
                value = {}
            if isinstance(value, dict) and claim_type and "type" not in value:
                value = {**value, "type": claim_type}
            data = {**data, "extracted_value": value}
            if isinstance(data.get("keywords"), str):
                data["keywords"] = decode_json(data["keywords"])
            if isinstance(data.get("embedding"), str):
                data["embedding"] = decode_json(data["embedding"])
        return data

    @model_validator(mode="after")
    def check_value_matches_type(self) -> Claim:
        if self.extracted_value.type != self.claim_type:
            raise ValueError(
                f"extracted_value type '{self.extracted_value.type}' does not match "
                f"claim_type '{self.claim_type}'"
            )
        return self

    @classmethod
    def from_row(cls, row: Any) -> Claim:
        """Build a Claim from a database row.

        Raises:
            ExtractionError: If the row's shape is invalid
        """
        data = record_to_dict(row)
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ExtractionError(f"Malformed claim {data.get('id')}: {e}", claim_id=data.get("id")) from e


class CodeEntity(BaseModel):
    """A parsed code entity owned by the codebase index."""
    model_config = ConfigDict(use_enum_values=True)

    id: str
    repo_id: str
    file_path: str
    line_number: int = 1
    end_line_number: int = 1
    entity_type: EntityType
    name: str
    signature: str = ""
    raw_code: str = ""
    embedding: Optional[list[float]] = None

    @classmethod
    def from_row(cls, row: Any) -> CodeEntity:
        data = record_to_dict(row)
        data["signature"] = data.get("signature") or ""
        data["raw_code"] = data.get("raw_code") or ""
        if "embedding" in data:
            data["embedding"] = decode_json(data["embedding"])
        return cls.model_validate(data)


class ClaimMapping(BaseModel):
    """A ranked candidate code location for a claim."""
    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=_new_id)
    claim_id: str
    repo_id: str
    code_file: str
    code_entity_id: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    co_change_boost: float = Field(0.0, ge=0.0, le=1.0)
    mapping_method: MappingMethod
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Any) -> ClaimMapping:
        return cls.model_validate(record_to_dict(row))


class VerificationResult(BaseModel):
    """Verdict for one claim in one scan run."""
    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=_new_id)
    claim_id: str
    repo_id: str
    scan_run_id: Optional[str] = None
    verdict: Verdict
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    tier: int = Field(1, ge=1, le=4)
    severity: Optional[Severity] = None
    reasoning: Optional[str] = None
    specific_mismatch: Optional[str] = None
    suggested_fix: Optional[str] = None
    evidence_files: list[str] = Field(default_factory=list)
    token_cost: Optional[int] = None
    duration_ms: Optional[int] = None
    verification_path: Optional[int] = None
    suppressed: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Any) -> VerificationResult:
        data = record_to_dict(row)
        data["evidence_files"] = list(data.get("evidence_files") or [])
        return cls.model_validate(data)


class AgentTask(BaseModel):
    """A leased unit of LLM-backed work."""
    model_config = ConfigDict(use_enum_values=True)

    id: str
    repo_id: str
    scan_run_id: str
    type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    result: Optional[dict[str, Any]] = None
    claimed_by: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    expires_at: datetime
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> AgentTask:
        data = record_to_dict(row)
        data["payload"] = decode_json(data.get("payload")) or {}
        data["result"] = decode_json(data.get("result"))
        return cls.model_validate(data)


class SuppressionRule(BaseModel):
    """A scoped, revocable directive hiding matching findings."""
    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=_new_id)
    repo_id: str
    scope: SuppressionScope
    target_claim_id: Optional[str] = None
    target_file: Optional[str] = None
    target_claim_type: Optional[ClaimType] = None
    target_pattern: Optional[str] = None
    reason: str
    source: RuleSource
    expires_at: Optional[datetime] = None
    revoked: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Any) -> SuppressionRule:
        return cls.model_validate(record_to_dict(row))


class Feedback(BaseModel):
    """Developer feedback on a finding."""
    model_config = ConfigDict(use_enum_values=True)

    id: Optional[str] = None
    repo_id: str = Field(..., min_length=1)
    claim_id: str = Field(..., min_length=1)
    verification_result_id: Optional[str] = None
    feedback_type: FeedbackType
    quick_pick_reason: Optional[QuickPickReason] = None
    free_text: Optional[str] = None
    github_user: Optional[str] = None
    pr_number: Optional[int] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> Feedback:
        return cls.model_validate(record_to_dict(row))


class CoChange(BaseModel):
    """A commit that touched both a code file and a doc file."""
    repo_id: str
    code_file: str
    doc_file: str
    commit_sha: str
    committed_at: datetime = Field(default_factory=_utcnow)


class ScanRun(BaseModel):
    """One verification pass over a repository's claims."""
    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=_new_id)
    repo_id: str
    status: ScanStatus = ScanStatus.RUNNING
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    claims_total: int = 0
    claims_verified: int = 0
    claims_drifted: int = 0
    claims_uncertain: int = 0
    claims_pending: int = 0
    claims_failed: int = 0
