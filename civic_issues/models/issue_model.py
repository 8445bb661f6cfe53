from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, validator

from civic_issues.utils.helpers import generate_issue_id, utcnow


class IssueCategory(str, Enum):
    pothole = "pothole"
    street_light = "street_light"
    drainage = "drainage"
    traffic_signal = "traffic_signal"
    road_damage = "road_damage"
    sidewalk = "sidewalk"
    graffiti = "graffiti"
    garbage = "garbage"
    water_leak = "water_leak"
    park_maintenance = "park_maintenance"
    noise_complaint = "noise_complaint"
    other = "other"


class Priority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class IssueStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    resolved = "resolved"
    rejected = "rejected"
    duplicate = "duplicate"


# Issues in these states are never offered as duplicate candidates
CLOSED_STATUSES = (IssueStatus.resolved, IssueStatus.rejected)


class VoteDirection(str, Enum):
    up = "up"
    down = "down"
    remove = "remove"


class ReportingMethod(str, Enum):
    web = "web"
    mobile = "mobile"
    api = "api"
    admin = "admin"


class _Document(BaseModel):
    class Config:
        populate_by_name = True
        use_enum_values = True
        validate_assignment = True


class Location(_Document):
    type: Literal["Point"] = "Point"
    coordinates: List[float]  # [longitude, latitude]

    @validator("coordinates")
    def validate_pair(cls, v):
        if len(v) != 2:
            raise ValueError("coordinates must be [longitude, latitude]")
        return v

    @property
    def longitude(self) -> float:
        return self.coordinates[0]

    @property
    def latitude(self) -> float:
        return self.coordinates[1]


class Address(_Document):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zipCode: Optional[str] = None
    country: str = "USA"
    formatted: Optional[str] = None


class IssueImage(_Document):
    url: str
    publicId: Optional[str] = None
    originalName: Optional[str] = None
    size: Optional[int] = None
    uploadedAt: datetime = Field(default_factory=utcnow)
    aiDescription: Optional[str] = None


class SentimentScores(_Document):
    overall: str = "neutral"  # negative, somewhat_negative, neutral, somewhat_positive, positive
    urgency: float = Field(0.5, ge=0.0, le=1.0)
    safety: float = Field(0.5, ge=0.0, le=1.0)
    impact: float = Field(0.5, ge=0.0, le=1.0)


class DamageDepth(_Document):
    estimatedDepth: Optional[float] = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    unit: str = "cm"
    damageAssessment: Optional[str] = None


class AIAnalysis(_Document):
    description: Optional[str] = None
    severity: Literal["low", "medium", "high"] = "medium"
    suggestedCategory: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    processedAt: datetime = Field(default_factory=utcnow)
    sentiment: Optional[SentimentScores] = None
    damageDepth: Optional[DamageDepth] = None


class PotentialDuplicate(_Document):
    issueId: str
    similarity: float = Field(..., ge=0.0, le=1.0)
    isDuplicate: bool


class DuplicateDetection(_Document):
    hasDuplicates: bool = False
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    potentialDuplicates: List[PotentialDuplicate] = []


class StatusHistoryEntry(_Document):
    status: IssueStatus
    changedBy: str
    changedAt: datetime = Field(default_factory=utcnow)
    reason: Optional[str] = None


class VoteRecord(_Document):
    user: str
    votedAt: datetime = Field(default_factory=utcnow)


class Votes(_Document):
    upvotes: List[VoteRecord] = []
    downvotes: List[VoteRecord] = []

    def upvoters(self) -> List[str]:
        return [v.user for v in self.upvotes]

    def downvoters(self) -> List[str]:
        return [v.user for v in self.downvotes]


class AdminNote(_Document):
    note: str = Field(..., max_length=1000)
    addedBy: str
    addedAt: datetime = Field(default_factory=utcnow)
    isPublic: bool = False


class IssueMetadata(_Document):
    reportingMethod: ReportingMethod = ReportingMethod.web
    userAgent: Optional[str] = None
    ipAddress: Optional[str] = None
    duplicateDetection: Optional[DuplicateDetection] = None


class Issue(_Document):
    id: str = Field(default_factory=generate_issue_id, alias="_id")
    title: str = Field(..., max_length=200)
    description: str = Field(..., max_length=2000)
    category: IssueCategory
    priority: Priority = Priority.medium
    status: IssueStatus = IssueStatus.pending
    location: Location
    address: Address = Field(default_factory=Address)
    images: List[IssueImage] = []
    aiAnalysis: Optional[AIAnalysis] = None
    reportedBy: str
    assignedTo: Optional[str] = None
    adminNotes: List[AdminNote] = []
    statusHistory: List[StatusHistoryEntry] = []
    votes: Votes = Field(default_factory=Votes)
    isPublic: bool = True
    estimatedResolutionTime: Optional[int] = Field(None, ge=1, le=8760)  # hours
    actualResolutionTime: Optional[int] = None  # hours
    resolvedAt: Optional[datetime] = None
    tags: List[str] = []
    metadata: IssueMetadata = Field(default_factory=IssueMetadata)
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)

    @property
    def upvoteCount(self) -> int:
        return len(self.votes.upvotes)

    @property
    def downvoteCount(self) -> int:
        return len(self.votes.downvotes)

    @property
    def totalVotes(self) -> int:
        return self.upvoteCount + self.downvoteCount

    @property
    def ageInDays(self) -> int:
        return int((utcnow() - self.createdAt).total_seconds() // 86400)

    def first_image_url(self) -> Optional[str]:
        return self.images[0].url if self.images else None

    def to_document(self) -> dict:
        """Mongo-ready dict (``_id`` key, enums as plain strings)."""
        return self.model_dump(by_alias=True)


class IssueDraft(_Document):
    """Submission payload for a new issue."""
    title: str = Field(..., min_length=3, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    category: IssueCategory
    priority: Optional[Priority] = None
    location: Location
    address: Optional[Address] = None
    images: List[IssueImage] = []
    tags: List[str] = []
    reportingMethod: ReportingMethod = ReportingMethod.web
    userAgent: Optional[str] = None
    ipAddress: Optional[str] = None

    def first_image_url(self) -> Optional[str]:
        return self.images[0].url if self.images else None


class CandidateSummary(_Document):
    """Lightweight view of an open issue used for duplicate comparison."""
    id: str
    title: str = ""
    description: str = ""
    coordinates: List[float]
    imageUrl: Optional[str] = None
    createdAt: Optional[datetime] = None
    status: IssueStatus = IssueStatus.pending


class IssueUpdate(_Document):
    """Administrative update; every field is optional."""
    status: Optional[IssueStatus] = None
    statusNotes: Optional[str] = None
    priority: Optional[Priority] = None
    assignedTo: Optional[str] = None
    isPublic: Optional[bool] = None
    estimatedResolutionTime: Optional[int] = None
    adminNote: Optional[str] = None
    noteIsPublic: bool = False


class VoteRequest(_Document):
    voteType: VoteDirection


class VoteTally(_Document):
    upvotes: int
    downvotes: int
    totalVotes: int
