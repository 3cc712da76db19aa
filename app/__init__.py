"""
FLUENT COACH APPLICATION PACKAGE
================================

This directory is the main Python package for the Fluent Coach backend.

FILE STRUCTURE:
  app/
    __init__.py   - This file; marks 'app' as a package.
    main.py       - FastAPI app and all HTTP endpoints (/chat, /chat/stream, /roles, ...).
    models.py     - Pydantic models for the provider wire format and for our API bodies.
    services/     - Business logic: completion client, stream decoder, chat sessions,
                    coach profiles, scenarios.
    utils/        - Small text helpers (bearer header, key masking, speakable text).
"""
