"""Person (employee) model, owned by the HR subsystem and read here"""
from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from issuesync.models.base import Base, utcnow


class Person(Base):
    """Identity record linking a tracker account to the reporting forest"""

    __tablename__ = "persons"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    login = Column(String, nullable=True)
    external_id = Column(BigInteger, unique=True, nullable=True, index=True)

    reports_to_id = Column(Integer, ForeignKey("persons.id"), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Person(name='{self.name}', external_id={self.external_id})>"


class PersonModule(Base):
    """Module membership used by team/module filters"""

    __tablename__ = "person_modules"
    __table_args__ = (UniqueConstraint("person_id", "module", name="uq_person_modules_person_module"),)

    id = Column(Integer, primary_key=True, index=True)
    person_id = Column(Integer, ForeignKey("persons.id", ondelete="CASCADE"), nullable=False, index=True)
    module = Column(String, nullable=False, index=True)

    def __repr__(self):
        return f"<PersonModule({self.module})>"
