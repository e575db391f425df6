"""Parlae PMS integration: the practice-management side of the Parlae voice assistant.

Architecture Overview
=====================

The voice assistant answers phone calls for dental practices.  When a
caller wants to book, move or cancel an appointment, register as a new
patient or check a balance, the assistant invokes one of the tools in
``parlae_pms.tools.pms``; each tool calls a ``PmsService`` operation.

``SikkaPmsService`` is the only production backend.  Sikka sits in front
of the practice's own PMS (Dentrix, Eaglesoft, Open Dental...):

1. **Auth**: ``TokenManager`` discovers the practice
   (``/authorized_practices``), obtains a Request-Key, refreshes it an hour
   before expiry and persists every transition in a ``CredentialStore``.

2. **Transport**: ``SikkaClient`` (httpx) injects the Request-Key, retries
   timeouts / 5xx with exponential back-off and replays once on a 401.

3. **Writebacks**: Sikka applies writes asynchronously through an agent
   installed at the practice.  ``WritebackPoller`` polls the writeback until
   it completes or fails; ``WritebackSweeper`` finishes abandoned polls
   from a scheduled job, inside Sikka's per-practice rate limit.

4. **Mapping**: ``sikka_mappers`` turns Sikka's mixed snake/camel payloads
   into the canonical Pydantic models in ``parlae_pms.models``.

Key Design Decisions
--------------------
- **Errors as values**: service operations never raise for upstream
  failures; they return ``PmsApiResponse`` with a stable error code.
- **PHI**: patient records are never logged; logs carry ids only.
- **Persistence**: token and writeback state lives in SQLAlchemy tables when
  ``DATABASE_URL`` is set, in memory otherwise.

Package Structure
-----------------
- ``parlae_pms/config.py``: configuration from env vars / SSM
- ``parlae_pms/models.py``: Pydantic domain models and response envelope
- ``parlae_pms/server.py``: FastAPI application
- ``parlae_pms/main.py``: operational CLI
- ``parlae_pms/services/``: Sikka auth, client, writebacks, mappers, stores
- ``parlae_pms/tools/``: LangChain tools for the voice assistant
- ``parlae_pms/api/``: FastAPI routes and Pydantic schemas
"""
