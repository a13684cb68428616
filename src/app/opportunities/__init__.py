"""Opportunity hub module -- models, schemas, and repositories for opportunities and their risks and competitors.

Provides SQLAlchemy models (Opportunity, Risk, Competitor), Pydantic schemas
(CRUD payloads, canonical CRM record, sync report), and async repositories
built on the session-factory pattern.
"""
