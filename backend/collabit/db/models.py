# backend/collabit/db/models.py
"""
SQLAlchemy ORM models for the project survey feature.
- Project:          a repository, unique by (title, organization)
- SurveyRecord:     one user's registration of a Project and its survey run
- Contributor:      an external (source-control) handle, shared across projects
- Membership:       (Project, SurveyRecord, Contributor) "known as of" relation
- AggregateScore:   global singleton rollup of all closed surveys
- SkillDescription / SkillFeedback: static reference data
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .session import Base


class Project(Base):
    __tablename__ = "project"
    __table_args__ = (UniqueConstraint("title", "organization", name="uq_project_title_org"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    organization: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_image: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Project id={self.id} {self.organization}/{self.title}>"


class SurveyRecord(Base):
    __tablename__ = "project_info"
    __table_args__ = (
        UniqueConstraint("project_id", "owner_id", name="uq_project_info_owner"),
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("project.id"), index=True, nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    # source-control handle of the owner; never a valid respondent
    owner_handle: Mapped[str] = mapped_column(String(128), nullable=False)

    # contributor count excluding the owner, fixed at registration
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    participant: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # accumulated sums, not averages
    sympathy: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    listening: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expression: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    problem_solving: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conflict_resolution: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    leadership: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    project: Mapped[Project] = relationship(lazy="joined", innerjoin=True)

    @property
    def is_done(self) -> bool:
        return self.completed_at is not None

    def __repr__(self) -> str:
        return (
            f"<SurveyRecord id={self.id} project_id={self.project_id} owner={self.owner_id} "
            f"participant={self.participant}/{self.total} done={self.is_done}>"
        )


class Contributor(Base):
    __tablename__ = "contributor"

    handle: Mapped[str] = mapped_column(String(128), primary_key=True)
    profile_image: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Contributor {self.handle}>"


class Membership(Base):
    __tablename__ = "project_contributor"
    __table_args__ = (
        UniqueConstraint("project_id", "survey_record_id", "contributor_handle", name="uq_project_contributor"),
        {"sqlite_autoincrement": True},
    )

    # surrogate id doubles as creation order
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("project.id"), index=True, nullable=False)
    survey_record_id: Mapped[int] = mapped_column(ForeignKey("project_info.id"), index=True, nullable=False)
    contributor_handle: Mapped[str] = mapped_column(ForeignKey("contributor.handle"), index=True, nullable=False)

    contributor: Mapped[Contributor] = relationship(lazy="joined", innerjoin=True)

    def __repr__(self) -> str:
        return (
            f"<Membership id={self.id} project_id={self.project_id} "
            f"survey_record_id={self.survey_record_id} handle={self.contributor_handle}>"
        )


class AggregateScore(Base):
    __tablename__ = "total_score"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    total_participant: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    sympathy: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    listening: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    expression: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    problem_solving: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    conflict_resolution: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    leadership: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class SkillDescription(Base):
    __tablename__ = "description"

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)


class SkillFeedback(Base):
    __tablename__ = "feedback"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    positive: Mapped[bool] = mapped_column(Boolean, nullable=False)
    feedback: Mapped[str] = mapped_column(Text, nullable=False)
