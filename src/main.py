"""
StoryWriter - Main Application

Captures a child's spoken conversation with a storytelling agent and turns
it into an illustrated story.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uvicorn
from contextlib import asynccontextmanager
from pathlib import Path
import logging
import sys
from datetime import datetime

from src.config import get_settings
from src.conversation import ConversationCoordinator
from src.services.logger import init_logger
from src.services.story_generation import HttpStoryBackend, StoryGenerationService
from src.services.story_library import FileKeyValueStore, StoryLibrary
from src.services.errors import AppError
from src.services.voice import VoiceService
from src.api.routes import router, set_coordinator
from src.api.websocket import router as websocket_router, set_coordinator as set_ws_coordinator

# Configure logging to both file and console
log_dir = Path("logs")
log_dir.mkdir(exist_ok=True)
log_file = log_dir / f"storywriter_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

# Create formatters
file_formatter = logging.Formatter(
    '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
console_formatter = logging.Formatter('%(message)s')

# File handler (detailed logs)
file_handler = logging.FileHandler(log_file, encoding='utf-8')
file_handler.setLevel(logging.DEBUG)
file_handler.setFormatter(file_formatter)

# Console handler (user-friendly output)
console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.INFO)
console_handler.setFormatter(console_formatter)

# Configure root logger
logging.basicConfig(
    level=logging.DEBUG,
    handlers=[file_handler, console_handler]
)

logger = logging.getLogger(__name__)
logger.info(f"📝 Logging to: {log_file}")


# Global services
coordinator: ConversationCoordinator = None
story_backend: HttpStoryBackend = None
key_value_store: FileKeyValueStore = None
voice_service: VoiceService = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle management for the application.

    Initializes services on startup, cleans up on shutdown.
    """
    # Startup
    global coordinator, story_backend, key_value_store, voice_service

    settings = get_settings()

    print("📖 Initializing StoryWriter...")

    # Initialize logger with settings
    app_logger = init_logger(debug_mode=settings.debug_mode, settings=settings)

    if settings.debug_generation_calls:
        print(f"🐛 Generation call logging enabled: {settings.debug_log_dir}/")

    # Story generation backend
    story_backend = HttpStoryBackend(
        settings.story_api_base_url,
        timeout_seconds=settings.story_api_timeout_seconds,
        expected_page_count=settings.expected_page_count,
    )
    if await story_backend.test_connection():
        print(f"✅ Story backend reachable: {settings.story_api_base_url}")
    else:
        print(f"⚠️  Story backend not reachable: {settings.story_api_base_url}")
        print("   💡 Set STORY_API_BASE_URL in .env file")

    story_service = StoryGenerationService(story_backend, settings=settings, app_logger=app_logger)

    # Narration is optional
    voice_service = VoiceService(settings=settings)
    if voice_service.available:
        print("✅ ElevenLabs narration enabled")
    else:
        print("⚠️  ELEVENLABS_API_KEY is missing! Narration will not work.")

    # Saved stories
    key_value_store = FileKeyValueStore(settings.storage_dir)

    coordinator = ConversationCoordinator(
        story_service,
        settings=settings,
        library=StoryLibrary(key_value_store, key=settings.saved_stories_key),
        speech=voice_service if voice_service.available else None,
        app_logger=app_logger,
    )
    try:
        await coordinator.load_saved_stories()
    except AppError as e:
        print(f"⚠️  Could not load saved stories: {e.message}")

    set_coordinator(coordinator)
    set_ws_coordinator(coordinator)  # Also set for WebSocket handler

    print(f"📖 StoryWriter ready on port {settings.port}!")
    print(f"📚 API Documentation: http://localhost:{settings.port}/docs")

    yield

    # Shutdown
    print("👋 Shutting down StoryWriter...")
    await coordinator.close()
    await story_backend.close()
    key_value_store.shutdown()
    voice_service.shutdown()


# Create FastAPI app
app = FastAPI(
    title="StoryWriter",
    description="""
    Turns a child's spoken conversation into an illustrated story.

    Features:
    - Debounced conversation capture from a remote voice agent
    - Transcript normalization
    - Story generation with retries and a reduced-budget fallback
    - Saved story library and narration audio
    """,
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
# Configure allowed origins from environment variable (default: "*" for all origins)
_settings = get_settings()
_cors_origins = (
    ["*"] if _settings.cors_allowed_origins == "*"
    else [origin.strip() for origin in _settings.cors_allowed_origins.split(",")]
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Validation error handler - log details for debugging
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    error_details = []
    for error in errors:
        input_val = error.get('input', 'N/A')
        # Truncate long inputs for readability
        if isinstance(input_val, str) and len(input_val) > 100:
            input_val = input_val[:100] + "..."
        error_details.append(f"{error['loc']}: {error['msg']} (input: {input_val})")

    logger.error(f"❌ Validation Error on {request.url.path}: " + " | ".join(error_details))

    return JSONResponse(
        status_code=422,
        content={"detail": errors}
    )


# Global exception handler - catch unhandled exceptions to prevent crashes
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch all unhandled exceptions to prevent server crashes.
    Logs the error and returns a friendly error message.
    """
    error_id = datetime.now().strftime('%Y%m%d_%H%M%S_%f')

    logger.error(f"❌ UNHANDLED EXCEPTION [{error_id}] {request.method} {request.url.path}", exc_info=exc)

    # Never expose exception details to clients; error_id finds them in the logs
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "error_id": error_id,
            "message": "An unexpected error occurred. Please try again."
        }
    )


# Include routes
app.include_router(router)
app.include_router(websocket_router)


@app.get("/")
async def root():
    """Root endpoint - API info"""
    return {
        "message": "Welcome to StoryWriter!",
        "docs": "/docs",
        "health": "/api/health",
        "conversation": "/api/conversation",
        "version": "1.0.0"
    }


def main():
    """Run the application"""
    settings = get_settings()

    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    main()
