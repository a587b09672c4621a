"""
Embedding pipeline: image -> quality-scored, L2-normalized face embedding.

Steps:
1. Decode/resize to the model input size, HWC -> CHW
2. Per-channel normalization with the configured mean/std
3. Inference through the shared FaceModelManager
4. L2 normalization
5. Quality score from magnitude, variance, sparsity and peak activation
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Union

import cv2
import numpy as np

from ..models.face_models import FaceModelConfig
from .model_loader import FaceModelManager, ModelNotReady

logger = logging.getLogger(__name__)

INTERPOLATIONS = {
    "nearest": cv2.INTER_NEAREST,
    "linear": cv2.INTER_LINEAR,
    "cubic": cv2.INTER_CUBIC,
    "area": cv2.INTER_AREA,
}

SPARSITY_EPSILON = 0.01


class CaptureFailed(Exception):
    """Görüntü çözülemedi veya beklenen biçimde değil."""
    code = "CAPTURE_FAILED"


class InferenceFailed(Exception):
    """Model çıkarımı sırasında hata; alttaki mesaj korunur."""
    code = "INFERENCE_FAILED"


@dataclass
class EmbeddingResult:
    """Output of one extraction"""

    embedding: np.ndarray
    quality: float
    raw_norm: float


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """
    Divides every component by the Euclidean norm. A zero vector is returned
    unchanged (degenerate) with a warning instead of dividing by zero.
    """
    vector = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        logger.warning("Zero magnitude embedding detected, returning it unnormalized.")
        return vector
    return vector / norm


def _clamp(value: float) -> float:
    if not np.isfinite(value):
        return 0.0
    return float(min(max(value, 0.0), 1.0))


def calculate_quality_score(
    embedding: np.ndarray,
    variance_scale: float = 100.0,
    activation_scale: float = 5.0,
) -> float:
    """
    Heuristic [0, 1] reliability score of a normalized embedding.

    quality = 0.3*magnitude + 0.3*variance + 0.2*sparsity + 0.2*activation,
    every term clamped to [0, 1] before combining.
    """
    vector = np.asarray(embedding, dtype=np.float64).ravel()
    if vector.size == 0:
        return 0.0

    magnitude = float(np.linalg.norm(vector))
    variance = float(np.var(vector))
    sparsity = float(np.count_nonzero(np.abs(vector) < SPARSITY_EPSILON)) / vector.size
    max_activation = float(np.max(np.abs(vector)))

    magnitude_score = _clamp(magnitude / 1.0)
    variance_score = _clamp(variance * variance_scale)
    sparsity_score = _clamp(1.0 - sparsity)
    activation_score = _clamp(max_activation * activation_scale)

    quality = (
        magnitude_score * 0.3
        + variance_score * 0.3
        + sparsity_score * 0.2
        + activation_score * 0.2
    )
    logger.debug(
        f"Quality components - magnitude: {magnitude_score:.3f}, variance: {variance_score:.3f}, "
        f"sparsity: {sparsity_score:.3f}, activation: {activation_score:.3f} -> {quality:.3f}"
    )
    return _clamp(quality)


class EmbeddingPipeline:
    """Turns a captured frame into an EmbeddingResult using the shared model."""

    def __init__(self, model_manager: FaceModelManager):
        self.model_manager = model_manager

    @property
    def config(self) -> FaceModelConfig:
        return self.model_manager.config

    def decode_image(self, image: Union[bytes, np.ndarray]) -> np.ndarray:
        """
        Accepts encoded image bytes (JPEG/PNG) or an RGB array (HxWx3, 0-255).

        Returns:
            RGB uint8 array
        """
        if isinstance(image, (bytes, bytearray)):
            if not image:
                raise CaptureFailed("Empty image payload")
            buffer = np.frombuffer(image, dtype=np.uint8)
            decoded = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
            if decoded is None:
                raise CaptureFailed("Image could not be decoded")
            # OpenCV BGR döndürür, model RGB bekler.
            return cv2.cvtColor(decoded, cv2.COLOR_BGR2RGB)

        if not isinstance(image, np.ndarray):
            raise CaptureFailed(f"Unsupported image type: {type(image).__name__}")
        if image.ndim != 3 or image.shape[2] != 3 or image.shape[0] == 0 or image.shape[1] == 0:
            raise CaptureFailed(f"Expected an HxWx3 image, got shape {image.shape}")
        return image

    def preprocess(self, image: np.ndarray) -> np.ndarray:
        """
        Preprocess image for the model.

        Args:
            image: RGB image (HxWx3), values 0-255

        Returns:
            Preprocessed image, shape (1, 3, H, W), NCHW float32
        """
        config = self.config
        width, height = config.input_size.width, config.input_size.height

        resized = cv2.resize(image, (width, height), interpolation=INTERPOLATIONS[config.interpolation])

        mean = np.array(config.mean, dtype=np.float32)
        std = np.array(config.std, dtype=np.float32)
        normalized = (resized.astype(np.float32) / 255.0 - mean) / std

        # HWC -> CHW, sonra batch boyutu
        planar = np.transpose(normalized, (2, 0, 1))
        return np.expand_dims(planar, axis=0).astype(np.float32)

    async def extract(self, image: Union[bytes, np.ndarray]) -> EmbeddingResult:
        """Main entry point: image -> normalized embedding + quality."""
        await self.model_manager.load()

        try:
            tensor = self.preprocess(self.decode_image(image))
        except CaptureFailed:
            raise
        except cv2.error as e:
            raise CaptureFailed(f"Image preprocessing failed: {e}") from e

        try:
            raw_output = await asyncio.to_thread(self.model_manager.run, tensor)
        except ModelNotReady:
            raise
        except Exception as e:
            logger.error(f"Face embedding inference failed: {e}", exc_info=True)
            raise InferenceFailed(str(e)) from e

        raw = np.asarray(raw_output, dtype=np.float64).ravel()
        if raw.size == 0:
            raise InferenceFailed("Invalid model output")
        if raw.size != self.config.embedding_size:
            raise InferenceFailed(
                f"Embedding dimension mismatch. Expected {self.config.embedding_size}, got {raw.size}"
            )

        raw_norm = float(np.linalg.norm(raw))
        embedding = l2_normalize(raw)
        quality = calculate_quality_score(
            embedding,
            variance_scale=self.config.variance_scale,
            activation_scale=self.config.activation_scale,
        )
        logger.info(f"Extracted {embedding.size}-D embedding (raw norm {raw_norm:.4f}, quality {quality:.3f}).")
        return EmbeddingResult(embedding=embedding, quality=quality, raw_norm=raw_norm)
