import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Form, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse, StreamingResponse
from fastapi.templating import Jinja2Templates
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, load_settings
from drive import DriveClient, OAuthSession
from errors import PipelineError, ReauthRequired, TokenRefreshFailed
from pipeline import SiteDownloader

TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
GENERIC_HINT = "Please check the URL and try again."

# Sent with every archive download
ATTACHMENT_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'; sandbox",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}

logger = logging.getLogger(__name__)
templates = Jinja2Templates(directory=TEMPLATES_DIR)


def render_error(request: Request, message: str, detail: str, status_code: int = 200):
    return templates.TemplateResponse(
        request,
        "error.html",
        {"message": message, "string": detail},
        status_code=status_code,
    )


def create_app(settings: Optional[Settings] = None, oauth: Optional[OAuthSession] = None,
               drive: Optional[DriveClient] = None, downloader: Optional[SiteDownloader] = None) -> FastAPI:
    """
    Builds the web app. Configuration is loaded here, so a missing variable
    stops the process at startup rather than on the first request.
    """
    settings = settings or load_settings()
    oauth = oauth or OAuthSession.from_settings(settings)
    drive = drive or DriveClient.from_settings(settings, oauth)
    downloader = downloader or SiteDownloader(settings, drive)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        downloader.cancel_all()

    app = FastAPI(
        title="SiteSnap",
        description="Download a whole website as a ZIP archive via Google Drive.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.oauth = oauth
    app.state.drive = drive
    app.state.downloader = downloader

    @app.exception_handler(StarletteHTTPException)
    async def http_error_page(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return render_error(request, "Page not found!", "We couldn't find the page you were looking for.", 404)
        return render_error(request, "Something went wrong!", str(exc.detail), exc.status_code)

    @app.get("/", response_class=HTMLResponse)
    def index(request: Request):
        return templates.TemplateResponse(request, "index.html", {})

    @app.post("/download")
    def download(request: Request, url: Optional[str] = Form(None)):
        """Mirrors the submitted site, stores it on Drive and streams the archive back."""
        logger.info(f"[download] url={url!r}")
        try:
            result = downloader.download(url)
            remote_file = drive.open_download(result.remote)
        except ReauthRequired as e:
            logger.warning(f"[download] re-authorization required: {e.message}")
            return RedirectResponse(url=e.consent_url, status_code=302)
        except PipelineError as e:
            logger.warning(f"[download] failed at {e.stage}: {e.message}", exc_info=e.__cause__ is not None)
            return render_error(request, e.title, f"{e.message} {GENERIC_HINT}")

        headers = {
            "Content-Disposition": f'attachment; filename="{result.job.archive_name}"',
            **ATTACHMENT_SECURITY_HEADERS,
        }
        if remote_file.content_length:
            headers["Content-Length"] = str(remote_file.content_length)
        return StreamingResponse(
            remote_file.iter_bytes(),
            media_type="application/zip",
            headers=headers,
        )

    @app.get("/oauth2callback", response_class=PlainTextResponse)
    def oauth2callback(code: Optional[str] = None):
        if not code:
            return PlainTextResponse("Missing authorization code.", status_code=400)
        try:
            oauth.exchange_code(code)
        except TokenRefreshFailed as e:
            logger.error(f"[oauth2callback] {e.message}")
            return PlainTextResponse(f"Authorization failed: {e.message}", status_code=502)
        return "Authorization successful! You can close this tab and download websites again."

    @app.get("/keep-alive")
    def keep_alive():
        return {"status": "alive"}

    return app


# Load environment variables from .env file if it exists (PORT is read directly)
load_dotenv()

_settings = load_settings()
logging.basicConfig(level=_settings.log_level)
app = create_app(_settings)

# To run this app (from your terminal):
# 1. Start FastAPI app: uvicorn api_main:app
# 2. Optional heartbeat: celery -A celery_app.celery_app worker -B -l info

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", 3000)))
