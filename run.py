"""
RUN SCRIPT - Start the Fluent Coach server
==========================================

PURPOSE:
  Single entry point to start the backend. Run this once per user/machine;
  the server then handles all chat requests for that instance.

WHAT IT DOES:
  - Imports the FastAPI app from app.main.
  - Serves it with uvicorn on COACH_HOST:COACH_PORT (default 0.0.0.0:8000).
  - COACH_RELOAD (default on) restarts the server when a .py file changes.

USAGE:
  python run.py

  Then run `python client.py` in another terminal, or use the API from your app.
  API docs: http://localhost:8000/docs

NOTE:
  Before running, pick a provider in .env (COACH_PROVIDER=siliconflow|siliconflow-deepseek|groq|gemini)
  and set its key (SILICONFLOW_API_KEY, GROQ_API_KEY or GEMINI_API_KEY).
  The provider can also be switched later with PUT /settings/provider.
"""

import uvicorn

from config import COACH_HOST, COACH_PORT, COACH_RELOAD

# ------------------------------------------------------------------------------
# ENTRY POINT
# ------------------------------------------------------------------------------
if __name__ == "__main__":
    # reload needs the app as an import string, not the app object.
    uvicorn.run(
        "app.main:app",
        host=COACH_HOST,
        port=COACH_PORT,
        reload=COACH_RELOAD,
    )
