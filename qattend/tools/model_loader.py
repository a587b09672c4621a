"""
Face recognition model manager.

Loads the ONNX model once per process and shares the session with every
verification call. Concurrent callers all await the same load task instead of
starting a second load, and the wait is bounded by a timeout.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Optional

import numpy as np

from ..models.face_models import FaceModelConfig

logger = logging.getLogger(__name__)


class ModelNotReady(Exception):
    """Model yüklenemedi veya henüz hazır değil."""
    code = "MODEL_NOT_READY"


class ModelLoadTimeout(ModelNotReady):
    """Devam eden bir model yüklemesi süre sınırı içinde tamamlanmadı."""
    code = "MODEL_LOAD_TIMEOUT"


def create_onnx_session(config: FaceModelConfig) -> Any:
    """Default session factory: ONNX Runtime on CPU. Imported lazily."""
    import onnxruntime as ort

    model_path = Path(config.model_path)
    if not model_path.exists():
        raise FileNotFoundError(f"Face model not found: {model_path}")
    if model_path.suffix != ".onnx":
        raise ValueError("Face model must be .onnx format")

    return ort.InferenceSession(str(model_path), providers=["CPUExecutionProvider"])


class FaceModelManager:
    """
    Owns the inference session and its configuration.

    Args:
        config: Typed model configuration, shared read-only.
        session_factory: Callable building the inference session from the
            config. Runs in a worker thread.
        load_timeout: Upper bound in seconds for waiting on a load.
    """

    def __init__(
        self,
        config: FaceModelConfig,
        session_factory: Callable[[FaceModelConfig], Any] = create_onnx_session,
        load_timeout: float = 60.0,
    ):
        self.config = config
        self._session_factory = session_factory
        self._load_timeout = load_timeout
        self._session: Optional[Any] = None
        self._load_task: Optional[asyncio.Task] = None

    @property
    def is_ready(self) -> bool:
        return self._session is not None

    async def load(self) -> Any:
        """Returns the shared session, loading it on first use."""
        if self._session is not None:
            return self._session

        if self._load_task is None:
            self._load_task = asyncio.get_running_loop().create_task(self._load())

        task = self._load_task
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._load_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Face model load did not finish within {self._load_timeout}s.")
            raise ModelLoadTimeout(f"Model loading timed out after {self._load_timeout} seconds")
        except ModelNotReady:
            raise
        except Exception as e:
            raise ModelNotReady(f"Model loading failed: {e}") from e

    async def _load(self) -> Any:
        logger.info(f"Loading face recognition model '{self.config.name}' from {self.config.model_path}...")
        try:
            session = await asyncio.to_thread(self._session_factory, self.config)
        except Exception as e:
            logger.error(f"Failed to load face recognition model: {e}", exc_info=True)
            # Sonraki çağrı yeniden deneyebilsin diye görevi sıfırla.
            self._load_task = None
            raise ModelNotReady(f"Model loading failed: {e}") from e

        self._session = session
        logger.info("Face recognition model loaded successfully.")
        return session

    def get_session(self) -> Any:
        if self._session is None:
            raise ModelNotReady("Face recognition model is not loaded")
        return self._session

    def run(self, input_tensor: np.ndarray) -> np.ndarray:
        """Synchronous inference on an NCHW float32 tensor; first output is returned."""
        session = self.get_session()
        input_name = session.get_inputs()[0].name
        outputs = session.run(None, {input_name: input_tensor})
        return np.asarray(outputs[0], dtype=np.float32)
