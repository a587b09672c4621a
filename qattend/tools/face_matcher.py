# qattend/tools/face_matcher.py

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


class EmbeddingDimensionMismatch(ValueError):
    """Karşılaştırılan vektörlerin boyutları farklı."""


class EmptyReferenceSet(ValueError):
    """Ortalaması alınacak hiç embedding yok."""


class InvalidEmbedding(ValueError):
    """Embedding biçimi veya değerleri geçersiz."""


@dataclass
class MatchResult:
    similarity: float
    accepted: bool
    threshold: float
    confidence: str  # 'high', 'medium', 'low'


def _as_vector(values) -> np.ndarray:
    return np.asarray(values, dtype=np.float64).ravel()


def validate_embedding(embedding, expected_dimension: Optional[int] = None) -> np.ndarray:
    """
    İstemciden gelen embedding'i doğrular ve numpy vektörüne çevirir.
    Boyut, sonlu değerler ve tamamen sıfır olmama kontrol edilir.
    """
    if not isinstance(embedding, (list, tuple, np.ndarray)):
        raise InvalidEmbedding("Embedding must be an array")
    try:
        vector = _as_vector(embedding)
    except (TypeError, ValueError) as e:
        raise InvalidEmbedding("Embedding contains invalid values") from e

    if vector.size == 0:
        raise InvalidEmbedding("Embedding cannot be empty")
    if expected_dimension is not None and vector.size != expected_dimension:
        raise InvalidEmbedding(
            f"Embedding dimension mismatch. Expected {expected_dimension}, got {vector.size}"
        )
    if not np.all(np.isfinite(vector)):
        raise InvalidEmbedding("Embedding contains invalid values")
    if not np.any(vector):
        raise InvalidEmbedding("Embedding cannot be all zeros")
    return vector


def cosine_similarity(a, b) -> float:
    """
    dot(a, b) / (|a| * |b|). Sıfır büyüklükte bir vektör varsa 0 döner.
    Sonuç kayan nokta hatalarına karşı [-1, 1] aralığına kırpılır.
    """
    a, b = _as_vector(a), _as_vector(b)
    if a.size != b.size:
        raise EmbeddingDimensionMismatch(f"Embeddings must have the same dimension ({a.size} vs {b.size})")

    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    similarity = float(np.dot(a, b)) / (norm_a * norm_b)
    return float(np.clip(similarity, -1.0, 1.0))


def average_embeddings(embeddings: Sequence) -> np.ndarray:
    """
    Kayıtlı embedding'lerin bileşen bazında ortalamasını alır ve sonucu yeniden
    L2-normalize eder. Girdilerin kayıt sırasında normalize edildiği varsayılır.
    """
    if len(embeddings) == 0:
        raise EmptyReferenceSet("Cannot average empty embedding array")

    vectors = [_as_vector(e) for e in embeddings]
    dimension = vectors[0].size
    for vector in vectors:
        if vector.size != dimension:
            raise EmbeddingDimensionMismatch("All embeddings must have the same dimension")

    averaged = np.mean(np.stack(vectors), axis=0)
    magnitude = float(np.linalg.norm(averaged))
    if magnitude > 0:
        averaged = averaged / magnitude
    return averaged


def confidence_level(similarity: float, threshold: float) -> str:
    if similarity >= threshold + 0.05:
        return "high"
    if similarity >= threshold + 0.02:
        return "medium"
    return "low"


class FaceMatcher:
    """
    Compares a live embedding with an enrolled profile.

    The threshold comes from configuration only; callers must not hard-code
    their own value.
    """

    def __init__(self, threshold: float):
        if not -1.0 <= threshold <= 1.0:
            raise ValueError(f"Threshold must be within [-1, 1], got {threshold}")
        self.threshold = threshold

    def decide(self, live, reference_set: Sequence) -> MatchResult:
        reference = average_embeddings(reference_set)
        similarity = cosine_similarity(live, reference)
        accepted = similarity >= self.threshold

        logger.info(
            f"Face match: similarity={similarity:.4f} threshold={self.threshold:.4f} "
            f"references={len(reference_set)} -> {'ACCEPTED' if accepted else 'REJECTED'}"
        )
        return MatchResult(
            similarity=similarity,
            accepted=accepted,
            threshold=self.threshold,
            confidence=confidence_level(similarity, self.threshold),
        )
