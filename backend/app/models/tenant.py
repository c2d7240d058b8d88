"""Tenant, prompt and provider models."""

import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text, Uuid

from app.db.base import Base
from app.db.types import UTCDateTime, utcnow


class PlanTier(str, Enum):
    """Subscription tier driving per-tenant quotas."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class Organization(Base):
    """A tenant."""

    __tablename__ = "organizations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    plan_tier = Column(String(20), nullable=False, default=PlanTier.FREE.value)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("ix_organizations_is_active", "is_active"),)


class Prompt(Base):
    """A tracked query owned by a tenant."""

    __tablename__ = "prompts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    text = Column(Text, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("ix_prompts_org_active", "org_id", "active"),)


class LLMProvider(Base):
    """An AI answer engine tasks can be executed against."""

    __tablename__ = "llm_providers"

    name = Column(String(50), primary_key=True)  # openai, perplexity, gemini
    enabled = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=100)  # lower runs first under quota
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
