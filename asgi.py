"""
asgi.py -- Application assembly for LinkDash.

This is the ONLY file that mounts the web router onto the API app. It joins
the two layers into a single ASGI app; api/main.py never imports web/.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from web.routes import router as web_router

app.include_router(web_router, tags=["Web UI"])
