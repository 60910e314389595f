"""Request bodies accepted by the HTTP API."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PathwayStepModel(_CamelModel):
    step_code: str = Field(alias="stepCode")
    pool: str = "work"
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes")
    default_days_offset: Optional[int] = Field(default=None, alias="defaultDaysOffset")
    requires_precommit: bool = Field(default=False, alias="requiresPrecommit")
    slack_days: Optional[int] = Field(default=None, alias="slackDays")
    label: Optional[str] = None

    def as_template(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={"label"})


class CarePathwayModel(_CamelModel):
    name: str
    reason: Optional[str] = None
    steps: List[PathwayStepModel] = Field(default_factory=list)
    window_slack_days: Optional[int] = Field(default=None, alias="windowSlackDays")

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must not be empty")
        return value.strip()


class CarePathwayUpdateModel(_CamelModel):
    name: Optional[str] = None
    reason: Optional[str] = None
    steps: Optional[List[PathwayStepModel]] = None
    window_slack_days: Optional[int] = Field(default=None, alias="windowSlackDays")


class StepLabelModel(_CamelModel):
    label: str


class EpisodeCreateModel(_CamelModel):
    patient_id: int = Field(alias="patientId")
    reason: Optional[str] = None
    provider_id: Optional[int] = Field(default=None, alias="providerId")
    care_pathway_id: Optional[int] = Field(default=None, alias="carePathwayId")


class EpisodeCloseModel(_CamelModel):
    status: str = "closed"


class EpisodePathwayModel(_CamelModel):
    care_pathway_id: int = Field(alias="carePathwayId")


class StageEventModel(_CamelModel):
    stage_code: str = Field(alias="stageCode")


class ProviderModel(_CamelModel):
    provider_id: int = Field(alias="providerId")


class EpisodeBlockModel(_CamelModel):
    key: str
    note: Optional[str] = None
    expires_in_days: Optional[int] = Field(default=None, alias="expiresInDays", ge=1)


class GenerateStepsModel(_CamelModel):
    episode_pathway_id: Optional[int] = Field(default=None, alias="episodePathwayId")


class StepUpdateModel(_CamelModel):
    status: str


class ReorderStepsModel(_CamelModel):
    step_ids: List[int] = Field(alias="stepIds")


class ConvertIntentModel(_CamelModel):
    time_slot_id: Optional[int] = Field(default=None, alias="timeSlotId")
    requires_precommit: bool = Field(default=False, alias="requiresPrecommit")


class TimeSlotModel(_CamelModel):
    provider_id: Optional[int] = Field(default=None, alias="providerId")
    start_time: str = Field(alias="startTime")
    duration_minutes: Optional[int] = Field(default=30, alias="durationMinutes")
    slot_purpose: Optional[str] = Field(default=None, alias="slotPurpose")


class AppointmentModel(_CamelModel):
    patient_id: int = Field(alias="patientId")
    time_slot_id: int = Field(alias="timeSlotId")
    episode_id: Optional[int] = Field(default=None, alias="episodeId")
    pool: str = "work"
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes")
    step_code: Optional[str] = Field(default=None, alias="stepCode")
    step_seq: Optional[int] = Field(default=None, alias="stepSeq")
    override_reason: Optional[str] = Field(default=None, alias="overrideReason")


class PendingAppointmentModel(_CamelModel):
    patient_id: int = Field(alias="patientId")
    time_slot_id: int = Field(alias="timeSlotId")
    alternative_time_slot_ids: List[int] = Field(default_factory=list, alias="alternativeTimeSlotIds")
    episode_id: Optional[int] = Field(default=None, alias="episodeId")
    pool: str = "work"
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes")


class CancelModel(_CamelModel):
    by: str = "doctor"


class OutcomeModel(_CamelModel):
    outcome: str
    notes: Optional[str] = None


class ApprovalModel(_CamelModel):
    token: str


class ForecastBatchModel(_CamelModel):
    episode_ids: List[int] = Field(alias="episodeIds")


__all__ = [
    "PathwayStepModel",
    "CarePathwayModel",
    "CarePathwayUpdateModel",
    "StepLabelModel",
    "EpisodeCreateModel",
    "EpisodeCloseModel",
    "EpisodePathwayModel",
    "StageEventModel",
    "ProviderModel",
    "EpisodeBlockModel",
    "GenerateStepsModel",
    "StepUpdateModel",
    "ReorderStepsModel",
    "ConvertIntentModel",
    "TimeSlotModel",
    "AppointmentModel",
    "PendingAppointmentModel",
    "CancelModel",
    "OutcomeModel",
    "ApprovalModel",
    "ForecastBatchModel",
]
