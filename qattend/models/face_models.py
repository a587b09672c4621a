import json
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

class InputSize(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int = Field(112, gt=0)
    height: int = Field(112, gt=0)
    channels: int = Field(3, ge=1, le=4)

class FaceModelConfig(BaseModel):
    """
    Strongly typed parameters of the face embedding model.

    Shared read-only across every verification call in the process, so the
    model is frozen: mutating a field raises instead of silently changing the
    behaviour of concurrent callers.
    """
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    name: str = "facenet"
    model_path: str = "models/facenet.onnx"
    embedding_size: int = Field(512, gt=0, description="Dimension D of the output vector")
    input_size: InputSize = Field(default_factory=InputSize)
    mean: Tuple[float, float, float] = (0.5, 0.5, 0.5)
    std: Tuple[float, float, float] = (0.5, 0.5, 0.5)
    interpolation: str = Field("linear", description="One of nearest, linear, cubic, area")
    variance_scale: float = Field(100.0, gt=0, description="K in the variance quality term")
    activation_scale: float = Field(5.0, gt=0, description="K2 in the activation quality term")

    @field_validator("std")
    @classmethod
    def std_must_be_positive(cls, v):
        if any(s <= 0 for s in v):
            raise ValueError("std values must be positive")
        return v

    @field_validator("interpolation")
    @classmethod
    def known_interpolation(cls, v):
        if v not in ("nearest", "linear", "cubic", "area"):
            raise ValueError(f"Unsupported interpolation: {v}")
        return v

    @classmethod
    def from_file(cls, path, model_path: Optional[str] = None) -> "FaceModelConfig":
        """Loads a model-config.json; keys follow the field names above."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if model_path and "model_path" not in data:
            data["model_path"] = model_path
        return cls.model_validate(data)

class VerificationAttempt(BaseModel):
    """
    One face verification call. Never persisted; it only lives long enough to
    be logged. The embedding is kept out of repr so it does not end up in logs.
    """
    identity: str
    embedding: list = Field(default_factory=list, repr=False)
    quality: Optional[float] = None
    decision: str
    similarity: float
    timestamp: datetime
