"""Pydantic schemas for spreadsheet rows and AI stage payloads."""

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class RawRow(BaseModel):
    """One spreadsheet row. Unknown columns are kept as extra fields."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    municipality: str = Field(
        "", validation_alias=AliasChoices("municipality", "Municipality", "city", "City")
    )
    state: str = Field("", validation_alias=AliasChoices("state", "State"))
    first_name: str = Field(
        "",
        validation_alias=AliasChoices("firstName", "first_name", "FirstName", "First Name"),
        serialization_alias="firstName",
    )
    last_name: str = Field(
        "",
        validation_alias=AliasChoices("lastName", "last_name", "LastName", "Last Name"),
        serialization_alias="lastName",
    )
    position: str = Field("", validation_alias=AliasChoices("position", "Position"))
    year: str = Field("", validation_alias=AliasChoices("year", "Year"))
    email: str = Field("", validation_alias=AliasChoices("email", "Email"))

    @field_validator("municipality", "state", "first_name", "last_name", "position", "year", "email", mode="before")
    @classmethod
    def coerce_cell(cls, v: object) -> str:
        # Spreadsheet cells arrive as numbers or blanks as often as strings.
        if v is None:
            return ""
        return str(v).strip()

    def to_stored(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class TokenUsage(BaseModel):
    request_tokens: int | None = None
    response_tokens: int | None = None
    total_tokens: int | None = None
    status_code: int | None = None


class StructuredCandidate(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    slug: str | None = None
    current_role: str | None = Field(None, alias="currentRole")
    party: str | None = None
    image_url: str | None = None
    linkedin_url: str | None = None
    campaign_website_url: str | None = None
    bio: str | None = None
    key_policies: list[str] | None = None
    home_city: str | None = None
    hometown_state: str | None = None
    additional_notes: str | None = None
    sources: list[str] | None = None
    email: str | None = None


class StructuredElectionInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = "Election"
    type: str = "LOCAL"
    date: str  # MM/DD/YYYY
    city: str
    state: str
    number_of_seats: str | None = None
    description: str = ""

    @field_validator("number_of_seats", mode="before")
    @classmethod
    def seats_as_text(cls, v: object) -> str | None:
        return None if v is None else str(v)


class StructuredElection(BaseModel):
    election: StructuredElectionInfo
    candidates: list[StructuredCandidate] = Field(default_factory=list)


class StructuredPayload(BaseModel):
    """Output of the STRUCTURE stage, input of the INSERT stage."""

    elections: list[StructuredElection]


class InsertResultItem(BaseModel):
    election_id: int
    position: str
    city: str
    state: str
    hidden: bool
    candidate_slugs: list[str] = Field(default_factory=list)
    candidate_emails: list[str | None] = Field(default_factory=list)
    election_results_url: str = ""
