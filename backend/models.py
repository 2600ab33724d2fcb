# models.py — Database models for CumpliRos
# - UUID (string) primary keys everywhere
# - Tenant root is Organization; users join through UserOrg memberships
# - Obligations, tasks, reviews and documents are always organisation-scoped
# - Soft deactivation for jurisdictions, organisations and locations
# - Append-only audit events
# Domain enums live in compliance_engine so the rules stay ORM-free.

import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, BigInteger, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

from compliance_engine import (
    Role, Plan, ObligationType, ObligationStatus, Periodicity,
    TemplateSeverity, TaskStatus, ReviewStatus, InvitationStatus,
)

Base = declarative_base()

DEFAULT_JURISDICTION_ID = "00000000-0000-0000-0000-000000000001"
DEFAULT_JURISDICTION_CODE = "ar-sf-rosario"


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ============================================================
# USERS & SESSIONS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    full_name = Column(String, nullable=False)
    password_hash = Column(String, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class RefreshToken(Base):
    """Opaque refresh tokens, stored only as a peppered SHA-256 hash."""
    __tablename__ = "refresh_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    revoked_at = Column(UTCDateTime, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    used_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)


# ============================================================
# JURISDICTIONS & TEMPLATE CATALOG
# ============================================================

class Jurisdiction(Base):
    __tablename__ = "jurisdictions"

    id = Column(String, primary_key=True, default=new_uuid)
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    country = Column(String(10), nullable=False, default="AR")
    province = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class ObligationTemplate(Base):
    __tablename__ = "obligation_templates"

    id = Column(String, primary_key=True, default=new_uuid)
    jurisdiction_id = Column(String, ForeignKey("jurisdictions.id"), nullable=False)
    template_key = Column(String, unique=True, nullable=False, index=True)
    rubric = Column(String, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(SQLEnum(ObligationType), nullable=False)
    default_periodicity = Column(SQLEnum(Periodicity), nullable=False)
    default_due_rule = Column(String, nullable=True)
    requires_review = Column(Boolean, default=False, nullable=False)
    required_evidence_count = Column(Integer, default=0, nullable=False)
    severity = Column(SQLEnum(TemplateSeverity), default=TemplateSeverity.MEDIUM, nullable=False)
    references = Column(JSON, nullable=True)
    version = Column(Integer, default=1, nullable=False)
    changelog = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_template_jurisdiction_rubric", "jurisdiction_id", "rubric", "is_active"),
    )


class ChecklistTemplateItem(Base):
    __tablename__ = "checklist_template_items"

    id = Column(String, primary_key=True, default=new_uuid)
    template_id = Column(String, ForeignKey("obligation_templates.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(String(500), nullable=False)
    order = Column(Integer, default=0, nullable=False)
    is_required = Column(Boolean, default=True, nullable=False)


# ============================================================
# ORGANISATIONS & MEMBERSHIP
# ============================================================

class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String, primary_key=True, default=new_uuid)
    cuit = Column(String(13), unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    plan = Column(SQLEnum(Plan), default=Plan.BASIC, nullable=False)
    threshold_yellow_days = Column(Integer, default=15, nullable=False)
    threshold_red_days = Column(Integer, default=7, nullable=False)
    jurisdiction_id = Column(String, ForeignKey("jurisdictions.id"), nullable=True)
    retention_months = Column(Integer, default=0, nullable=False)
    active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class UserOrg(Base):
    __tablename__ = "user_orgs"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(SQLEnum(Role), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_user_org"),
    )


class Invitation(Base):
    __tablename__ = "invitations"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    role = Column(SQLEnum(Role), nullable=False)
    token = Column(String, unique=True, nullable=False, default=new_uuid)
    status = Column(SQLEnum(InvitationStatus), default=InvitationStatus.PENDING, nullable=False)
    invited_by_user_id = Column(String, ForeignKey("users.id"), nullable=True)
    expires_at = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)


class Location(Base):
    __tablename__ = "locations"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    address = Column(String(500), nullable=True)
    rubric = Column(String(255), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


# ============================================================
# OBLIGATIONS, TASKS, REVIEWS, DOCUMENTS
# ============================================================

class Obligation(Base):
    __tablename__ = "obligations"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    location_id = Column(String, ForeignKey("locations.id"), nullable=True)
    template_id = Column(String, ForeignKey("obligation_templates.id"), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(SQLEnum(ObligationType), nullable=False)
    status = Column(SQLEnum(ObligationStatus), default=ObligationStatus.PENDING, nullable=False)
    due_date = Column(UTCDateTime, nullable=False)
    recurrence_rule = Column(String(100), nullable=True)
    requires_review = Column(Boolean, default=False, nullable=False)
    required_evidence_count = Column(Integer, default=0, nullable=False)
    owner_user_id = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_obligation_org_status", "organization_id", "status"),
        Index("idx_obligation_org_due", "organization_id", "due_date"),
        Index("idx_obligation_status_due", "status", "due_date"),
    )


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    obligation_id = Column(String, ForeignKey("obligations.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_to_user_id = Column(String, ForeignKey("users.id"), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(TaskStatus), default=TaskStatus.OPEN, nullable=False)
    due_date = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class TaskItem(Base):
    __tablename__ = "task_items"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(String(500), nullable=False)
    done = Column(Boolean, default=False, nullable=False)
    order = Column(Integer, default=0, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)


class Review(Base):
    __tablename__ = "reviews"

    id = Column(String, primary_key=True, default=new_uuid)
    obligation_id = Column(String, ForeignKey("obligations.id", ondelete="CASCADE"), nullable=False, index=True)
    reviewer_user_id = Column(String, ForeignKey("users.id"), nullable=False)
    status = Column(SQLEnum(ReviewStatus), nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)


class Document(Base):
    """Metadata only; bytes live in object storage under org/{organization_id}/."""
    __tablename__ = "documents"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    obligation_id = Column(String, ForeignKey("obligations.id", ondelete="SET NULL"), nullable=True, index=True)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True)
    uploaded_by_user_id = Column(String, ForeignKey("users.id"), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_key = Column(String(500), unique=True, nullable=False)
    mime_type = Column(String(100), nullable=False)
    size_bytes = Column(BigInteger, default=0, nullable=False)
    uploaded_at = Column(UTCDateTime, default=utcnow, index=True)


# ============================================================
# AUDIT & JOB BOOKKEEPING
# ============================================================

class AuditEvent(Base):
    """Append-only. Never updated or deleted by application code."""
    __tablename__ = "audit_events"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    action = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("idx_audit_org_created", "organization_id", "created_at"),
        Index("idx_audit_entity", "entity_type", "entity_id"),
    )


class JobRun(Base):
    """One row per (job, period): the watermark that keeps scheduled runs at-most-once."""
    __tablename__ = "job_runs"

    id = Column(String, primary_key=True, default=new_uuid)
    job_name = Column(String(50), nullable=False)
    period_key = Column(String(20), nullable=False)
    started_at = Column(UTCDateTime, default=utcnow, nullable=False)
    finished_at = Column(UTCDateTime, nullable=True)
    summary = Column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("job_name", "period_key", name="uq_job_run_period"),
    )
