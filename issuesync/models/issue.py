"""Mirrored issue model"""
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from issuesync.models.base import Base, utcnow


class Issue(Base):
    """Local mirror of one remote issue or pull request.

    Author and closer are flattened into columns; assignees and labels live in
    child tables so they can be joined ("unwound") by the aggregation queries.
    """

    __tablename__ = "issues"

    id = Column(Integer, primary_key=True, index=True)

    # Remote identity (never regenerated by the tracker)
    external_id = Column(BigInteger, unique=True, nullable=False, index=True)
    number = Column(Integer, nullable=False, index=True)

    title = Column(String, nullable=True)
    state = Column(String, nullable=False, index=True)  # "open" | "closed"

    created_at = Column(DateTime, nullable=True, index=True)
    updated_at = Column(DateTime, nullable=True, index=True)
    closed_at = Column(DateTime, nullable=True, index=True)

    # Author
    user_external_id = Column(BigInteger, nullable=True, index=True)
    user_login = Column(String, nullable=True, index=True)
    user_person_id = Column(Integer, ForeignKey("persons.id"), nullable=True)

    # Closer (singleton or empty)
    closed_by_external_id = Column(BigInteger, nullable=True, index=True)
    closed_by_login = Column(String, nullable=True)
    closed_by_person_id = Column(Integer, ForeignKey("persons.id"), nullable=True)

    issue_type = Column(String, nullable=True, index=True)
    is_pull_request = Column(Boolean, default=False, nullable=False, index=True)
    merged_at = Column(DateTime, nullable=True)
    has_sub_issues = Column(Boolean, default=False, nullable=False)
    url = Column(String, nullable=True)

    synced_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    assignees = relationship(
        "IssueAssignee",
        order_by="IssueAssignee.position",
        cascade="all, delete-orphan",
        back_populates="issue",
    )
    labels = relationship(
        "IssueLabel",
        order_by="IssueLabel.id",
        cascade="all, delete-orphan",
        back_populates="issue",
    )

    @property
    def label_names(self) -> list[str]:
        return [label.name for label in self.labels]

    def __repr__(self):
        return f"<Issue(#{self.number}, external_id={self.external_id}, state={self.state})>"


class IssueAssignee(Base):
    """One assignee slot of an issue, in remote order"""

    __tablename__ = "issue_assignees"
    __table_args__ = (
        UniqueConstraint("issue_id", "external_id", name="uq_issue_assignees_issue_external"),
    )

    id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(Integer, ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    external_id = Column(BigInteger, nullable=False, index=True)
    login = Column(String, nullable=True, index=True)
    person_id = Column(Integer, ForeignKey("persons.id"), nullable=True)

    issue = relationship("Issue", back_populates="assignees")

    def __repr__(self):
        return f"<IssueAssignee({self.login}, external_id={self.external_id})>"


class IssueLabel(Base):
    """Label name attached to an issue"""

    __tablename__ = "issue_labels"
    __table_args__ = (UniqueConstraint("issue_id", "name", name="uq_issue_labels_issue_name"),)

    id = Column(Integer, primary_key=True, index=True)
    issue_id = Column(Integer, ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False, index=True)

    issue = relationship("Issue", back_populates="labels")

    def __repr__(self):
        return f"<IssueLabel({self.name})>"
