"""Wire models for the external translation services.

These mirror the JSON bodies exchanged with the translate, analyze, fix,
page-image and publish endpoints. Unknown fields are ignored so additive
changes on the service side do not break parsing.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Correction(BaseModel):
    """A find/replace pair suggested by the analyzer."""

    find: str = Field(..., description="Visible text exactly as it appears on the page")
    replace: str = Field(..., description="Corrected text in the target language")


class TranslateResponse(BaseModel):
    """Result of a translate call."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., description="Translation id assigned by the service")
    ok: bool = True


class PreviousIssues(BaseModel):
    """Issue lists from the analysis a fix was based on."""

    fluency_issues: List[str] = Field(default_factory=list)
    grammar_issues: List[str] = Field(default_factory=list)
    context_errors: List[str] = Field(default_factory=list)


class PreviousContext(BaseModel):
    """Context passed to a re-analysis after a fix round.

    Tells the analyzer which corrections were already applied so it does
    not re-flag the same issues.
    """

    applied_corrections: List[Correction] = Field(default_factory=list)
    previous_score: Optional[float] = None
    previous_issues: PreviousIssues = Field(default_factory=PreviousIssues)


class AnalysisResult(BaseModel):
    """Quality analysis of a translated page."""

    model_config = ConfigDict(extra="ignore")

    quality_score: Optional[float] = Field(default=None, ge=0, le=100)
    fluency_issues: List[str] = Field(default_factory=list)
    grammar_issues: List[str] = Field(default_factory=list)
    context_errors: List[str] = Field(default_factory=list)
    name_localization: List[str] = Field(default_factory=list)
    suggested_corrections: List[Correction] = Field(default_factory=list)
    overall_assessment: str = ""


class FixResult(BaseModel):
    """Result of applying the stored suggested corrections."""

    model_config = ConfigDict(extra="ignore")

    corrections_applied: int = 0
    corrections_failed: int = 0
    applied_corrections: List[Correction] = Field(default_factory=list)
    previous_score: Optional[float] = None
    previous_issues: PreviousIssues = Field(default_factory=PreviousIssues)


class SideAssetResponse(BaseModel):
    """Result of translating one embedded asset."""

    model_config = ConfigDict(extra="ignore")

    ok: bool = True


class PublishEvent(BaseModel):
    """One record of the publish progress stream.

    Every field is optional: records are partial updates, not snapshots.
    """

    model_config = ConfigDict(extra="ignore")

    step: Optional[str] = None
    current: Optional[int] = None
    total: Optional[int] = None
    message: Optional[str] = None
    url: Optional[str] = None
