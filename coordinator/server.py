"""
Remote key-value parameter server.

Provides REST endpoints for:
- Pushing gradient batches and validation stats under a key
- Pulling the current value of a key
- Health monitoring

Bodies are binary (``application/octet-stream``) in the big-endian format of
``communication.serialization``.
"""

import argparse
import logging
import threading
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field
import uvicorn

from communication.serialization import (
    decode_gradient_batch,
    decode_validation_stats_pair,
    encode_layer_parameters,
    encode_validation_stats_pair,
)
from core.config import NetworkConfig
from core.layer_parameter import LayerParameter
from coordinator.parameter_updater import (
    KEYS,
    VALIDATION,
    WHOLE_MODEL,
    NeuralNetworkParameterUpdater,
)


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


OCTET_STREAM = "application/octet-stream"


# Response models

class HealthResponse(BaseModel):
    """Parameter server health."""
    status: str = Field(..., description="Server status")
    keys: List[str] = Field(..., description="Keys populated so far")
    pushes: int = Field(..., description="Number of accepted pushes", ge=0)
    updates: int = Field(..., description="Number of parameter updates applied", ge=0)


class PushResponse(BaseModel):
    """Acknowledgement of a push."""
    status: str = Field(..., description="Push status")
    key: str = Field(..., description="Key the payload was pushed to")


class KeyValueStore:
    """
    Current value of every key plus the gradient batches not yet applied.

    A key is populated by its first push. Pending gradient batches for
    ``WHOLE_MODEL`` are folded into the parameters on the next pull.
    """

    def __init__(self, updater: NeuralNetworkParameterUpdater):
        self.updater = updater
        self._values: Dict[str, Any] = {}
        self._pending: List[List[LayerParameter]] = []
        self._lock = threading.Lock()
        self.num_pushes = 0
        self.num_updates = 0

    def push(self, key: str, payload: bytes):
        """
        Store pushed data.

        Raises:
            ValueError: If the payload cannot be decoded
        """
        if key == WHOLE_MODEL:
            batch = decode_gradient_batch(payload)
        elif key == VALIDATION:
            pair = decode_validation_stats_pair(payload)
        else:
            raise RuntimeError(f"Unexpected key: {key}")

        with self._lock:
            if key not in self._values:
                self._values[key] = self.updater.init_value(key)
            self.num_pushes += 1

            if key == WHOLE_MODEL:
                self._pending.extend(batch)
                logger.debug(f"Received {len(batch)} gradient arrays ({len(self._pending)} pending)")
            else:
                delta = self.updater.process(key, pair)
                self._values[key] = self.updater.update(key, self._values[key], delta)

    def pull(self, key: str) -> Optional[bytes]:
        """
        Encoded current value of a key, or None if it has not been pushed yet.
        """
        with self._lock:
            if key not in self._values:
                return None

            if key == WHOLE_MODEL:
                if self._pending:
                    delta = self.updater.process(key, self._pending)
                    self._pending = []
                    if delta is not None:
                        self._values[key] = self.updater.update(key, self._values[key], delta)
                        self.num_updates += 1
                return encode_layer_parameters(self._values[key])

            training, cross_validation = self._values[key]
            return encode_validation_stats_pair(training, cross_validation)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._values)


# Global state
kv_store: Optional[KeyValueStore] = None


def configure(config: NetworkConfig, log_period: int = 1) -> KeyValueStore:
    """Create the store served by the app."""
    global kv_store
    kv_store = KeyValueStore(NeuralNetworkParameterUpdater(config, log_period=log_period))
    logger.info(
        f"Parameter server configured: {len(config.layers)} layers, "
        f"stepsize={config.stepsize}, log_period={log_period}"
    )
    return kv_store


def _get_store() -> KeyValueStore:
    if kv_store is None:
        raise HTTPException(status_code=503, detail="Parameter server is not configured")
    return kv_store


def _check_key(key: str):
    if key not in KEYS:
        raise HTTPException(status_code=404, detail=f"Unknown key: {key}")


# Lifespan context manager

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan (startup/shutdown)."""
    logger.info("Starting parameter server...")
    if kv_store is None:
        logger.warning("Parameter server started without a configuration; call configure() first")
    yield
    logger.info("Parameter server shutdown complete")


# Create FastAPI app

app = FastAPI(
    title="Parameter Server",
    description="Key-value parameter server for synchronous neural network training",
    version="0.1.0",
    lifespan=lifespan
)


# API Endpoints

@app.get("/health", response_model=HealthResponse)
async def health():
    """Health check endpoint."""
    store = _get_store()
    return HealthResponse(
        status="healthy",
        keys=store.keys(),
        pushes=store.num_pushes,
        updates=store.num_updates
    )


@app.post("/push/{key}", response_model=PushResponse)
async def push(key: str, request: Request):
    """
    Push data under a key.

    ``WHOLE_MODEL`` takes a gradient batch list, ``VALIDATION`` a
    validation stats pair.
    """
    _check_key(key)
    store = _get_store()
    payload = await request.body()

    try:
        store.push(key, payload)
    except ValueError as e:
        logger.error(f"Rejected push to {key}: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    return PushResponse(status="success", key=key)


@app.get("/pull/{key}")
async def pull(key: str):
    """Pull the current value of a key."""
    _check_key(key)
    store = _get_store()

    payload = store.pull(key)
    if payload is None:
        raise HTTPException(status_code=404, detail=f"Key {key} has not been populated yet")

    return Response(content=payload, media_type=OCTET_STREAM)


# Development server

def run_server(config: NetworkConfig, host: str = "0.0.0.0", port: int = 8000, log_period: int = 1):
    """
    Run the parameter server.

    Args:
        config: Network configuration shared with the workers
        host: Host to bind to (default: 0.0.0.0)
        port: Port to bind to (default: 8000)
        log_period: Minimum number of training samples per logged iteration
    """
    configure(config, log_period=log_period)
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Key-Value Parameter Server")
    parser.add_argument(
        "--config",
        type=str,
        required=True,
        help="Path to the network config JSON file"
    )
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument(
        "--log-period",
        type=int,
        default=1,
        help="Minimum number of training samples per logged iteration"
    )
    args = parser.parse_args()

    run_server(NetworkConfig.from_json_file(args.config), host=args.host, port=args.port, log_period=args.log_period)
