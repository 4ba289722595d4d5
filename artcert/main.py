import mimetypes
import structlog
import time
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, UploadFile, File, HTTPException, Depends, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

# Load environment variables before reading configuration
from dotenv import load_dotenv
load_dotenv()

from artcert import config, __version__
from artcert.core.authority import CertificationAuthority
from artcert.core.database import PostgresRecordStore
from artcert.core.errors import (
    CertificationRaceExhaustedError, MalformedInputError, StoreUnavailableError
)
from artcert.core.index import build_index
from artcert.core.records import InMemoryRecordStore, RecordStore
from artcert.core.similarity import similarity_score
from artcert.core.storage import StorageClient, StorageError
from artcert.models.certification import CertificationMetadata, CertificationOutcome, OutcomeStatus
from artcert.models.fingerprint import Fingerprint
from artcert.models.responses import (
    CertificateResponse, CertificationResponse, ErrorResponse, FingerprintRequest, HealthResponse
)
from artcert.services.perceptual import compute_fingerprint

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

SUPPORTED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp", "image/bmp", "image/tiff"}


def build_record_store() -> RecordStore:
    """Record store selected by configuration."""
    if config.RECORD_STORE == "memory":
        logger.warning("Using in-memory record store; certifications will not survive a restart")
        return InMemoryRecordStore()
    store = PostgresRecordStore(config.DB_DSN)
    store.initialize()
    store.ensure_schema()
    return store


def build_authority(store: RecordStore) -> CertificationAuthority:
    """Hydrate the fingerprint index from the store and wrap it in an authority."""
    index = build_index(config.INDEX_KIND, store, config.NEAR_DUPLICATE_THRESHOLD, config.FINGERPRINT_BITS)
    index.hydrate()
    return CertificationAuthority(
        index,
        fingerprint_bits=config.FINGERPRINT_BITS,
        max_attempts=config.MAX_CERTIFY_ATTEMPTS,
    )


def get_authority(request: Request) -> CertificationAuthority:
    return request.app.state.authority


def get_storage_client(request: Request) -> StorageClient:
    return request.app.state.storage_client


def client_origin(request: Request) -> str:
    """
    Submitter network origin.

    X-Forwarded-For is never read here. uvicorn rewrites the client address
    from proxy headers only for peers in ARTCERT_FORWARDED_ALLOW_IPS.
    """
    return request.client.host if request.client else "unknown"


def read_image_upload(file: UploadFile) -> bytes:
    """Validate an uploaded image and return its bytes."""
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required"
        )

    content_type = file.content_type
    if content_type not in SUPPORTED_IMAGE_TYPES:
        # Generic types such as application/octet-stream; trust the extension
        content_type = mimetypes.guess_type(file.filename)[0]
    if content_type not in SUPPORTED_IMAGE_TYPES:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported media type: {content_type}. Supported types: {', '.join(sorted(SUPPORTED_IMAGE_TYPES))}"
        )

    data = file.file.read(config.MAX_FILE_SIZE + 1)
    if len(data) > config.MAX_FILE_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File size exceeds maximum allowed size of {config.MAX_FILE_SIZE} bytes"
        )
    return data


def to_response(outcome: CertificationOutcome) -> CertificationResponse:
    similarity = None
    if outcome.distance is not None:
        similarity = similarity_score(outcome.distance, outcome.fingerprint.bits)
    return CertificationResponse.from_outcome(outcome, similarity)


def parse_fingerprint(hex_value: str) -> Fingerprint:
    try:
        return Fingerprint.from_hex(hex_value)
    except ValueError as e:
        raise MalformedInputError(str(e)) from e


router = APIRouter()


@router.get("/", response_model=dict)
def root():
    """Root endpoint with API information."""
    return {
        "name": "ArtCert API",
        "version": __version__,
        "description": "Artwork originality certification",
        "docs_url": "/docs",
        "health_url": "/health",
    }


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request):
    """Health check endpoint with record store and storage status."""
    authority = request.app.state.authority
    storage_client = request.app.state.storage_client
    try:
        store_healthy = authority.index.store.check_connection() if authority else False
        storage_health = storage_client.health_check() if storage_client else {"error": "not_initialized"}
        storage_ok = storage_health.get("gcs", {}).get("available") or storage_health.get("local", {}).get("available")

        components = {
            "record_store": "healthy" if store_healthy else "unhealthy",
            "storage": "healthy" if storage_ok else "unhealthy",
            "fingerprint_index": "healthy" if authority else "not_initialized",
        }
        overall_status = "healthy" if all(s == "healthy" for s in components.values()) else "degraded"

        return HealthResponse(
            status=overall_status,
            version=__version__,
            components={**components, "storage_health": storage_health}
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        return HealthResponse(status="unhealthy", version=__version__, components={"error": str(e)})


@router.post("/certify", response_model=CertificationResponse,
             responses={201: {"model": CertificationResponse}})
def certify_upload(
    request: Request,
    response: Response,
    file: UploadFile = File(..., description="Artwork image to certify"),
    authority: CertificationAuthority = Depends(get_authority),
    storage_client: StorageClient = Depends(get_storage_client),
):
    """
    Fingerprint an uploaded image and certify it if no identical or
    visually similar artwork has been certified before.

    The raw file is only stored when the read-only check finds no match.
    """
    start_time = time.time()
    data = read_image_upload(file)
    fingerprint = compute_fingerprint(data)

    logger.info("Processing certification upload",
                filename=file.filename, size=len(data), fingerprint=fingerprint.to_hex())

    preview = authority.check(fingerprint)
    if preview.is_duplicate:
        return to_response(preview)

    try:
        storage_locator = storage_client.upload(data, file.filename)
    except StorageError as e:
        logger.error("Artwork storage failed", filename=file.filename, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Artwork storage failed: {e}")

    metadata = CertificationMetadata(
        original_name=file.filename,
        source_origin=client_origin(request),
        storage_locator=storage_locator,
    )
    outcome = authority.certify(fingerprint, metadata)
    if outcome.status == OutcomeStatus.CERTIFIED:
        response.status_code = status.HTTP_201_CREATED

    logger.info("Certification upload completed",
                filename=file.filename,
                status=outcome.status.value,
                processing_time_ms=round((time.time() - start_time) * 1000, 2))
    return to_response(outcome)


@router.post("/check", response_model=CertificationResponse)
def check_upload(
    file: UploadFile = File(..., description="Artwork image to check"),
    authority: CertificationAuthority = Depends(get_authority),
):
    """Read-only classification of an uploaded image. Nothing is stored."""
    data = read_image_upload(file)
    return to_response(authority.check(compute_fingerprint(data)))


@router.post("/fingerprints/check", response_model=CertificationResponse)
def check_fingerprint(
    payload: FingerprintRequest,
    authority: CertificationAuthority = Depends(get_authority),
):
    """Read-only classification of a client-computed fingerprint."""
    return to_response(authority.check(parse_fingerprint(payload.fingerprint)))


@router.post("/fingerprints/certify", response_model=CertificationResponse,
             responses={201: {"model": CertificationResponse}})
def certify_fingerprint(
    payload: FingerprintRequest,
    request: Request,
    response: Response,
    authority: CertificationAuthority = Depends(get_authority),
):
    """Certify a client-computed fingerprint."""
    fingerprint = parse_fingerprint(payload.fingerprint)
    outcome = authority.certify(fingerprint, {
        "original_name": payload.original_name or "",
        "source_origin": client_origin(request),
        "storage_locator": payload.storage_locator or "",
    })
    if outcome.status == OutcomeStatus.CERTIFIED:
        response.status_code = status.HTTP_201_CREATED
    return to_response(outcome)


@router.get("/certificates/{certification_id}", response_model=CertificateResponse)
def get_certificate(
    certification_id: str,
    authority: CertificationAuthority = Depends(get_authority),
):
    """Verify a certification by its ID."""
    record = authority.lookup(certification_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND,
                            detail=f"Certification not found: {certification_id}")
    return CertificateResponse.from_record(record)


@router.get("/stats", response_model=dict)
def get_system_stats(authority: CertificationAuthority = Depends(get_authority)):
    """Index and certification statistics."""
    return {
        "certification": authority.stats(),
        "api_version": __version__,
        "timestamp": time.time(),
    }


async def malformed_input_handler(request: Request, exc: MalformedInputError):
    logger.info("Rejected malformed input", url=str(request.url), error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(error="malformed_input", message=str(exc)).model_dump()
    )


async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    logger.error("Record store unavailable", url=str(request.url), error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        headers={"Retry-After": "5"},
        content=ErrorResponse(error="store_unavailable", message="Record store is temporarily unavailable").model_dump()
    )


async def race_exhausted_handler(request: Request, exc: CertificationRaceExhaustedError):
    logger.error("Certification race exhausted", url=str(request.url), attempts=exc.attempts)
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=ErrorResponse(
            error="certification_race_exhausted",
            message=str(exc),
            details={"attempts": exc.attempts}
        ).model_dump()
    )


async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception",
                 url=str(request.url), method=request.method, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_server_error", "message": "An unexpected error occurred"}
    )


def create_app(authority: Optional[CertificationAuthority] = None,
               storage_client: Optional[StorageClient] = None) -> FastAPI:
    """
    Build the API. Components not passed in are created from configuration
    at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup and shutdown events."""
        owned_store = None
        logger.info("Starting ArtCert API")
        try:
            if app.state.authority is None:
                owned_store = build_record_store()
                app.state.authority = build_authority(owned_store)
            if app.state.storage_client is None:
                app.state.storage_client = StorageClient()
            logger.info("Certification authority ready", **app.state.authority.stats())
        except Exception as e:
            logger.error("Failed to initialize application", error=str(e))
            raise

        yield

        logger.info("Shutting down ArtCert API")
        if isinstance(owned_store, PostgresRecordStore):
            owned_store.close()

    app = FastAPI(
        title="ArtCert API",
        description="Fingerprint-based originality certification for digital artwork",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        responses={
            422: {"model": ErrorResponse, "description": "Malformed Input"},
            503: {"model": ErrorResponse, "description": "Record Store Unavailable"},
            500: {"model": ErrorResponse, "description": "Internal Server Error"},
        }
    )
    app.state.authority = authority
    app.state.storage_client = storage_client

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    app.add_exception_handler(MalformedInputError, malformed_input_handler)
    app.add_exception_handler(StoreUnavailableError, store_unavailable_handler)
    app.add_exception_handler(CertificationRaceExhaustedError, race_exhausted_handler)
    app.add_exception_handler(Exception, global_exception_handler)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "artcert.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        reload=config.DEBUG,
        proxy_headers=True,
        forwarded_allow_ips=config.FORWARDED_ALLOW_IPS,
        log_config=None,  # We handle logging with structlog
    )
