# SQLAlchemy models for Papers, LibraryPapers, ProjectCitations, ChunkCitationLogs
from sqlalchemy import Column, String, DateTime, Text, Integer, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
from uuid import uuid4
from datetime import datetime

Base = declarative_base()


class Paper(Base):
    __tablename__ = 'papers'
    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    title = Column(String, nullable=False)
    abstract = Column(Text)
    authors = Column(JSON, default=list)  # ["Given Family", ...]
    year = Column(Integer)
    doi = Column(String, index=True)
    venue = Column(String)
    url = Column(String)
    content_type = Column(String)  # full_text, abstract, or None before ingestion
    chunk_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    citations = relationship('ProjectCitation', back_populates='paper')


# Papers a user has saved; used to break ties when matching titles
class LibraryPaper(Base):
    __tablename__ = 'library_papers'
    __table_args__ = (UniqueConstraint('user_id', 'paper_id', name='uq_library_user_paper'),)
    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    paper_id = Column(String, ForeignKey('papers.id'), nullable=False)
    added_at = Column(DateTime, default=datetime.utcnow)
    paper = relationship('Paper')


# One canonical citation per (project, paper)
class ProjectCitation(Base):
    __tablename__ = 'project_citations'
    __table_args__ = (UniqueConstraint('project_id', 'paper_id', name='uq_project_citation'),)
    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    project_id = Column(String, nullable=False, index=True)
    paper_id = Column(String, ForeignKey('papers.id'), nullable=False)
    csl_json = Column(JSON, nullable=False)
    cite_key = Column(String, nullable=False)
    citation_number = Column(Integer, nullable=False)  # first-seen order within the project
    reason = Column(Text)
    quote = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    paper = relationship('Paper', back_populates='citations')


# Relevance feedback: which retrieved chunks ended up cited in generated text
class ChunkCitationLog(Base):
    __tablename__ = 'chunk_citation_logs'
    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    project_id = Column(String, nullable=False, index=True)
    chunk_id = Column(String, nullable=False, index=True)
    paper_id = Column(String, index=True)
    section = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
