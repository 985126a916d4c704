"""
Database Schemas for the School Portal

Each Pydantic model below maps to a MongoDB collection (see the collection
constants in database.py). Use these to validate data and as the source of
truth for the application domain.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Mongo hands back naive UTC datetimes, so everything coming in is normalised to match
UTCDateTime = Annotated[datetime, AfterValidator(to_naive_utc)]

HHMM_PATTERN = r"^([01]\d|2[0-3]):([0-5]\d)$"


# -------------------- Enums -------------------- #

class UserRole(str, Enum):
    ADMIN = "ADMIN"
    COLLABORATOR = "COLLABORATOR"
    STUDENT = "STUDENT"


class EventType(str, Enum):
    LESSON = "LESSON"
    SIMULATION = "SIMULATION"
    MEETING = "MEETING"
    EXAM = "EXAM"
    OTHER = "OTHER"


class EventLocationType(str, Enum):
    ONLINE = "ONLINE"
    IN_PERSON = "IN_PERSON"
    HYBRID = "HYBRID"


class RecurrenceFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


class EventInviteStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    TENTATIVE = "TENTATIVE"


class AttendanceStatus(str, Enum):
    PRESENT = "PRESENT"
    ABSENT = "ABSENT"
    LATE = "LATE"
    EXCUSED = "EXCUSED"


class StaffAbsenceStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class NotificationType(str, Enum):
    ACCOUNT_ACTIVATED = "ACCOUNT_ACTIVATED"
    NEW_REGISTRATION = "NEW_REGISTRATION"
    PROFILE_COMPLETED = "PROFILE_COMPLETED"
    EVENT_INVITATION = "EVENT_INVITATION"
    EVENT_REMINDER = "EVENT_REMINDER"
    EVENT_UPDATED = "EVENT_UPDATED"
    EVENT_CANCELLED = "EVENT_CANCELLED"
    SIMULATION_ASSIGNED = "SIMULATION_ASSIGNED"
    SIMULATION_REMINDER = "SIMULATION_REMINDER"
    SIMULATION_READY = "SIMULATION_READY"
    SIMULATION_STARTED = "SIMULATION_STARTED"
    SIMULATION_RESULTS = "SIMULATION_RESULTS"
    SIMULATION_COMPLETED = "SIMULATION_COMPLETED"
    STAFF_ABSENCE = "STAFF_ABSENCE"
    ABSENCE_REQUEST = "ABSENCE_REQUEST"
    ABSENCE_CONFIRMED = "ABSENCE_CONFIRMED"
    ABSENCE_REJECTED = "ABSENCE_REJECTED"
    SUBSTITUTION_ASSIGNED = "SUBSTITUTION_ASSIGNED"
    GROUP_MEMBER_ADDED = "GROUP_MEMBER_ADDED"
    ATTENDANCE_RECORDED = "ATTENDANCE_RECORDED"
    SYSTEM_ALERT = "SYSTEM_ALERT"
    GENERAL = "GENERAL"


class NotificationChannel(str, Enum):
    IN_APP = "IN_APP"
    EMAIL = "EMAIL"
    BOTH = "BOTH"


class SimulationType(str, Enum):
    OFFICIAL = "OFFICIAL"
    PRACTICE = "PRACTICE"
    CUSTOM = "CUSTOM"
    QUICK_QUIZ = "QUICK_QUIZ"


class SimulationStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class SimulationVisibility(str, Enum):
    PRIVATE = "PRIVATE"
    GROUP = "GROUP"
    PUBLIC = "PUBLIC"


class AssignmentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True)


# -------------------- Identities -------------------- #

class User(Document):
    name: str
    email: str
    password_hash: str
    role: UserRole = UserRole.STUDENT
    is_active: bool = False
    profile_completed: bool = False
    last_login_at: Optional[datetime] = None
    expo_push_token: Optional[str] = None


class ProfileFields(Document):
    fiscal_code: Optional[str] = None
    date_of_birth: Optional[datetime] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None


PROFILE_FIELDS = list(ProfileFields.model_fields)


class StudentProfile(ProfileFields):
    user_id: str
    matricola: str


class CollaboratorProfile(ProfileFields):
    user_id: str
    can_manage_questions: bool = False
    can_manage_materials: bool = False
    can_view_stats: bool = False
    can_view_students: bool = False
    specialization: Optional[str] = None
    notes: Optional[str] = None


class Group(Document):
    name: str
    description: Optional[str] = None
    member_ids: List[str] = Field(default_factory=list, description="user ids of students and collaborators")
    referent_id: Optional[str] = None
    created_by_id: str


# -------------------- Calendar -------------------- #

class CalendarEvent(Document):
    title: str
    description: Optional[str] = None
    type: EventType = EventType.OTHER
    start_date: datetime
    end_date: datetime
    is_all_day: bool = False
    location_type: EventLocationType = EventLocationType.IN_PERSON
    location_details: Optional[str] = None
    online_link: Optional[str] = None
    is_public: bool = False
    send_email_invites: bool = False
    send_email_reminders: bool = False
    reminder_minutes: Optional[int] = None
    is_recurring: bool = False
    recurrence_frequency: Optional[RecurrenceFrequency] = None
    recurrence_end_date: Optional[datetime] = None
    created_by_id: str
    is_cancelled: bool = False
    cancelled_at: Optional[datetime] = None
    cancelled_by_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    simulation_id: Optional[str] = None


class EventInvitation(Document):
    event_id: str
    user_id: Optional[str] = None
    group_id: Optional[str] = None
    status: EventInviteStatus = EventInviteStatus.PENDING
    responded_at: Optional[datetime] = None
    response_note: Optional[str] = None


class Attendance(Document):
    event_id: str
    student_id: str
    status: AttendanceStatus
    notes: Optional[str] = None
    arrival_time: Optional[datetime] = None
    leave_time: Optional[datetime] = None
    recorded_by_id: Optional[str] = None
    last_edited_by_id: Optional[str] = None
    last_edited_at: Optional[datetime] = None


class StaffAbsence(Document):
    requester_id: str
    start_date: datetime
    end_date: datetime
    is_all_day: bool = True
    reason: str
    is_urgent: bool = False
    affected_event_id: Optional[str] = None
    status: StaffAbsenceStatus = StaffAbsenceStatus.PENDING
    confirmed_by_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    admin_notes: Optional[str] = None
    substitute_id: Optional[str] = None


# -------------------- Notifications -------------------- #

class Notification(Document):
    user_id: str
    type: NotificationType = NotificationType.GENERAL
    title: str
    message: str
    channel: NotificationChannel = NotificationChannel.IN_APP
    link_url: Optional[str] = None
    link_type: Optional[str] = None
    link_entity_id: Optional[str] = None
    is_urgent: bool = False
    is_read: bool = False
    read_at: Optional[datetime] = None
    is_archived: bool = False
    email_sent: bool = False
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class NotificationPreference(Document):
    user_id: str
    notification_type: NotificationType
    in_app_enabled: bool = True
    email_enabled: bool = True
    quiet_hours_start: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    quiet_hours_end: Optional[str] = Field(None, pattern=HHMM_PATTERN)


# -------------------- Simulations -------------------- #

class AnswerOption(Document):
    id: str
    text: str
    is_correct: bool = False


class SimulationQuestion(Document):
    id: str
    text: str
    subject: Optional[str] = None
    difficulty: Optional[str] = Field(None, description="EASY|MEDIUM|HARD")
    answers: List[AnswerOption] = Field(default_factory=list)
    points: float = 1.0
    negative_points: float = 0.0
    custom_points: Optional[float] = None
    custom_negative_points: Optional[float] = None


class SimulationSection(Document):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    duration_minutes: int = Field(..., ge=1)
    question_ids: List[str] = Field(default_factory=list)
    order: int = Field(0, ge=0)


class Simulation(Document):
    title: str
    description: Optional[str] = None
    type: SimulationType
    status: SimulationStatus = SimulationStatus.DRAFT
    visibility: SimulationVisibility = SimulationVisibility.PRIVATE
    is_official: bool = False
    is_paper_based: bool = False
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    duration_minutes: int = 0
    show_results: bool = True
    show_correct_answers: bool = True
    allow_review: bool = True
    randomize_order: bool = False
    is_repeatable: bool = False
    max_attempts: Optional[int] = None
    use_question_points: bool = False
    correct_points: float = 1.5
    wrong_points: float = -0.4
    blank_points: float = 0.0
    passing_score: Optional[float] = None
    max_score: Optional[float] = None
    questions: List[SimulationQuestion] = Field(default_factory=list)
    has_sections: bool = False
    sections: List[SimulationSection] = Field(default_factory=list)
    created_by_id: str
    creator_role: UserRole


class SimulationAssignment(Document):
    simulation_id: str
    student_id: Optional[str] = None
    group_id: Optional[str] = None
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    notes: Optional[str] = None
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    assigned_by_id: str
    calendar_event_id: Optional[str] = None


class SimulationResult(Document):
    simulation_id: str
    student_id: str
    answers: List[Dict[str, Any]] = Field(default_factory=list)
    total_questions: int = 0
    started_at: datetime
    completed_at: Optional[datetime] = None
    total_score: Optional[float] = None
    percentage_score: Optional[float] = None
    correct_answers: int = 0
    wrong_answers: int = 0
    blank_answers: int = 0
    duration_seconds: int = 0
    is_paper_based: bool = False
    current_section_index: int = 0
    section_started_at: Optional[datetime] = None
    completed_sections: List[int] = Field(default_factory=list)


class AuditLog(Document):
    user_id: Optional[str] = None
    role: Optional[str] = None
    action: str
    path: Optional[str] = None
    method: Optional[str] = None
    status: Optional[int] = None
    ip: Optional[str] = None


SCHEMA_MODELS = [
    User, StudentProfile, CollaboratorProfile, Group,
    CalendarEvent, EventInvitation, Attendance, StaffAbsence,
    Notification, NotificationPreference,
    Simulation, SimulationAssignment, SimulationResult,
    AuditLog,
]
