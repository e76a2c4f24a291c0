import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
import uvicorn

from config import config
from model import ImageDecodeError, InferenceError, ModelService, ModelUnavailableError, get_service
import pinger

logger = logging.getLogger(__name__)

START_TIME = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await run_in_threadpool(get_service().warmup)
        logger.info("Model warmed up")
    except InferenceError as e:
        logger.warning(f"Model warmup failed (will try on first request): {e}")

    if config.START_PINGER:
        try:
            pinger.start_ping_loop()
            logger.info("Ping loop started (START_PINGER=true)")
        except RuntimeError as e:
            logger.warning(f"Failed to start ping loop: {e}")

    yield

    pinger.stop_ping_loop()


app = FastAPI(title="Food classifier", lifespan=lifespan)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


def get_model_service() -> ModelService:
    return get_service()


def extract_api_key(request: Request) -> str:
    """Key from x-api-key, then Authorization (scheme + key or raw key), then ?api_key."""
    header_key = request.headers.get("x-api-key", "")
    if header_key:
        return header_key
    auth = request.headers.get("authorization", "")
    if auth:
        parts = auth.split(" ")
        return parts[1] if len(parts) > 1 else parts[0]
    return request.query_params.get("api_key", "")


def require_api_key(request: Request) -> None:
    expected: Optional[str] = config.API_KEY
    if not expected:
        logger.warning("API_KEY not configured in environment")
        raise HTTPException(status_code=500, detail="Server misconfiguration")

    provided = extract_api_key(request)
    if not provided:
        raise HTTPException(status_code=401, detail="Missing API key")
    if provided != expected:
        raise HTTPException(status_code=403, detail="Invalid API key")


@app.get("/", dependencies=[Depends(require_api_key)])
async def root(service: ModelService = Depends(get_model_service)):
    return {"status": "ok", "ready": service.is_ready, "uptime": time.time() - START_TIME}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/predict", dependencies=[Depends(require_api_key)])
async def predict(image: Optional[UploadFile] = File(None),
                  service: ModelService = Depends(get_model_service)):
    if image is None:
        raise HTTPException(status_code=400, detail="Missing image file (field name: image)")
    contents = await image.read()
    if not contents:
        raise HTTPException(status_code=400, detail="Missing image file (field name: image)")

    try:
        result = await run_in_threadpool(service.predict_from_buffer, contents)
    except ImageDecodeError as e:
        logger.error(f"Prediction error: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except ModelUnavailableError as e:
        logger.error(f"Prediction error: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    except InferenceError as e:
        logger.error(f"Prediction error: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    # Anything that is not the "food" class counts as not food
    out = "food" if result.label == "food" else "not_food"
    return {"result": out}


if __name__ == "__main__":
    logger.info(f"Server listening on port {config.PORT}")
    logger.info('POST /predict with form-data field "image" (file)')
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
