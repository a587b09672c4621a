import numpy as np
import pytest

from qattend.tools.face_matcher import (
    EmbeddingDimensionMismatch, EmptyReferenceSet, FaceMatcher, InvalidEmbedding,
    average_embeddings, confidence_level, cosine_similarity, validate_embedding
)


def _unit(vector):
    vector = np.asarray(vector, dtype=np.float64)
    return vector / np.linalg.norm(vector)


@pytest.fixture
def rng():
    return np.random.default_rng(42)


class TestCosineSimilarity:

    def test_symmetric_and_bounded(self, rng):
        for _ in range(20):
            a, b = rng.normal(size=64), rng.normal(size=64)
            s = cosine_similarity(a, b)
            assert s == pytest.approx(cosine_similarity(b, a))
            assert -1.0 <= s <= 1.0

    def test_self_similarity_is_one(self, rng):
        a = rng.normal(size=128)
        assert cosine_similarity(a, a) == pytest.approx(1.0)

    def test_zero_vector_gives_zero(self):
        assert cosine_similarity([0.0, 0.0, 0.0], [1.0, 2.0, 3.0]) == 0.0

    def test_dimension_mismatch_raises(self):
        with pytest.raises(EmbeddingDimensionMismatch):
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


class TestAverageEmbeddings:

    def test_average_of_identical_vectors_is_the_vector(self, rng):
        v = _unit(rng.normal(size=32))
        averaged = average_embeddings([v, v, v])
        np.testing.assert_allclose(averaged, v, atol=1e-12)

    def test_result_is_unit_length(self, rng):
        vectors = [_unit(rng.normal(size=16)) for _ in range(4)]
        assert np.linalg.norm(average_embeddings(vectors)) == pytest.approx(1.0)

    def test_empty_set_raises(self):
        with pytest.raises(EmptyReferenceSet):
            average_embeddings([])

    def test_mismatched_dimensions_raise(self):
        with pytest.raises(EmbeddingDimensionMismatch):
            average_embeddings([[1.0, 0.0], [1.0, 0.0, 0.0]])


class TestValidateEmbedding:

    def test_valid_embedding_returns_array(self):
        vector = validate_embedding([0.1, 0.2, 0.3], expected_dimension=3)
        assert vector.shape == (3,)

    @pytest.mark.parametrize("embedding", [
        "not-a-list",
        [],
        [0.0, 0.0, 0.0],
        [float("nan"), 1.0, 1.0],
        [float("inf"), 1.0, 1.0],
    ])
    def test_invalid_embeddings_are_rejected(self, embedding):
        with pytest.raises(InvalidEmbedding):
            validate_embedding(embedding)

    def test_wrong_dimension_is_rejected(self):
        with pytest.raises(InvalidEmbedding, match="dimension"):
            validate_embedding([0.1, 0.2], expected_dimension=512)


class TestFaceMatcher:

    def test_reference_scenario_accepts_high_similarity(self):
        """Referans [1,0,0]; canlı vektör benzerliği 0.9 olacak şekilde seçilir."""
        live = [0.9, np.sqrt(1 - 0.81), 0.0]
        matcher = FaceMatcher(threshold=0.6)

        result = matcher.decide(live, [[1.0, 0.0, 0.0]])

        assert result.similarity == pytest.approx(0.9)
        assert result.accepted is True
        assert result.confidence == "high"

    def test_rejection_still_reports_similarity(self):
        matcher = FaceMatcher(threshold=0.95)
        result = matcher.decide([0.9, np.sqrt(1 - 0.81), 0.0], [[1.0, 0.0, 0.0]])

        assert result.accepted is False
        assert result.similarity == pytest.approx(0.9)
        assert result.threshold == 0.95

    def test_threshold_is_inclusive(self):
        result = FaceMatcher(threshold=1.0).decide([1.0, 0.0], [[1.0, 0.0]])
        assert result.accepted is True

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            FaceMatcher(threshold=1.5)

    @pytest.mark.parametrize("similarity, expected", [
        (0.66, "high"),
        (0.63, "medium"),
        (0.61, "low"),
    ])
    def test_confidence_levels(self, similarity, expected):
        assert confidence_level(similarity, 0.6) == expected
