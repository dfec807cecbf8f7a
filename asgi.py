"""
asgi.py -- Application assembly for VPNAdmin.

This is the ONLY file that imports from both api/ and web/ routers. It joins
the two layers into a single ASGI app. api/main.py knows nothing about web/;
web/routes.py only shares the rate limiter instance from api/limiter.py.

Run with:  uvicorn asgi:app --reload
"""

from pathlib import Path

from fastapi.staticfiles import StaticFiles

from api.main import app
from web.routes import router as web_router

# Mount the web UI router here, not in api/main.py.
app.include_router(web_router, tags=["Web UI"])
app.mount("/static", StaticFiles(directory=str(Path(__file__).parent / "web" / "static")), name="static")
