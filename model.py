import onnxruntime
import numpy as np
from PIL import Image
import io
import sys
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
from pathlib import Path
import time

from config import config, get_model_path, get_class_names_path
from labels import LabelResolver

# Setup logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Used when the model does not declare a usable input size
DEFAULT_IMAGE_SIZE = 252

# ImageNet normalization constants (RGB)
NORMALIZE_MEAN = (0.485, 0.456, 0.406)
NORMALIZE_STD = (0.229, 0.224, 0.225)


class InferenceError(Exception):
    """Base class for errors raised by the inference pipeline."""


class ModelUnavailableError(InferenceError, RuntimeError):
    """The model could not be loaded; the service is not ready."""


class ModelConfigurationError(ModelUnavailableError):
    """The loaded model does not expose the inputs/outputs we need."""


class ImageDecodeError(InferenceError, ValueError):
    """The supplied bytes are not a decodable image."""


@dataclass(frozen=True)
class InputGeometry:
    height: int
    width: int


DEFAULT_GEOMETRY = InputGeometry(DEFAULT_IMAGE_SIZE, DEFAULT_IMAGE_SIZE)


@dataclass(frozen=True)
class PredictionResult:
    label: str
    scores: List[float]
    probs: List[float]
    top_index: int

    @property
    def confidence(self) -> float:
        return self.probs[self.top_index]

    def to_dict(self) -> Dict:
        return asdict(self)


class ImagePreprocessor:
    """Turns encoded image bytes into a normalized NCHW tensor."""

    def __init__(self):
        # Kept in float64 so the arithmetic is rounded to float32 only once
        self.mean = np.array(NORMALIZE_MEAN, dtype=np.float64)
        self.std = np.array(NORMALIZE_STD, dtype=np.float64)

    def load_image(self, image_bytes: bytes) -> Image.Image:
        """Decode raw bytes into a PIL image."""
        if not image_bytes:
            raise ImageDecodeError("Empty image data")
        try:
            image = Image.open(io.BytesIO(image_bytes))
            image.load()
            return image
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            logger.error(f"Error loading image: {e}")
            raise ImageDecodeError(f"Could not decode image: {e}") from e

    def convert_to_rgb(self, image: Image.Image) -> Image.Image:
        """Convert image to RGB, dropping any alpha channel."""
        if image.mode != 'RGB':
            logger.debug(f"Converting image from {image.mode} to RGB")
            image = image.convert('RGB')
        return image

    def resize_image(self, image: Image.Image, width: int, height: int) -> Image.Image:
        """Stretch to exactly width x height; aspect ratio is not preserved."""
        if image.size == (width, height):
            return image
        return image.resize((width, height), Image.LANCZOS)

    def normalize_image(self, image_array: np.ndarray) -> np.ndarray:
        """Scale HWC uint8 pixels to [0, 1] and apply per-channel mean/std."""
        scaled = image_array.astype(np.float64) / 255.0
        return (scaled - self.mean) / self.std

    def preprocess(self, image_bytes: bytes, width: int, height: int) -> np.ndarray:
        """
        Complete preprocessing pipeline.

        Args:
            image_bytes: Encoded image (any format Pillow can read)
            width: Target width in pixels
            height: Target height in pixels

        Returns:
            float32 array with shape (1, 3, height, width): plane 0 holds the
            normalized red channel in row-major order, then green, then blue.
        """
        image = self.load_image(image_bytes)
        try:
            image = self.convert_to_rgb(image)
            image = self.resize_image(image, width, height)
            image_array = np.asarray(image, dtype=np.uint8)
        except (OSError, ValueError) as e:
            logger.error(f"Error preprocessing image: {e}")
            raise ImageDecodeError(f"Could not preprocess image: {e}") from e

        normalized = self.normalize_image(image_array)

        # HWC -> CHW, then add batch dimension
        tensor = np.transpose(normalized, (2, 0, 1))
        tensor = np.expand_dims(tensor, axis=0)
        return np.ascontiguousarray(tensor, dtype=np.float32)


def parse_dim(dim: Any) -> Optional[int]:
    """Return a usable positive dimension, or None for symbolic/unknown dims."""
    if isinstance(dim, bool) or dim is None:
        return None
    if isinstance(dim, (int, np.integer)):
        return int(dim) if dim > 0 else None
    if isinstance(dim, float):
        return int(dim) if dim.is_integer() and dim > 0 else None
    if isinstance(dim, str) and dim.strip().isdigit():
        value = int(dim.strip())
        return value if value > 0 else None
    return None


def expected_geometry(shape: Any) -> InputGeometry:
    """
    Work out the spatial size an image input expects from its declared shape.

    Handles NCHW ([N, 3, H, W]), NHWC ([N, H, W, 3]) and CHW ([3, H, W]).
    Anything else of rank 3 or more uses the last two known dims. Rank 0-2
    shapes, or shapes without two known dims, get the 252x252 default.
    """
    if not isinstance(shape, (list, tuple)):
        return DEFAULT_GEOMETRY
    dims = [parse_dim(d) for d in shape]

    if len(dims) == 4:
        _, d1, d2, d3 = dims
        if d1 == 3 and d2 and d3:
            return InputGeometry(d2, d3)
        if d3 == 3 and d1 and d2:
            return InputGeometry(d1, d2)

    if len(dims) == 3:
        d0, d1, d2 = dims
        if d0 == 3 and d1 and d2:
            return InputGeometry(d1, d2)

    if len(dims) >= 3:
        known = [d for d in dims if d is not None]
        if len(known) >= 2:
            return InputGeometry(known[-2], known[-1])

    return DEFAULT_GEOMETRY


class ONNXModel:
    """Owns the ONNX Runtime session; created lazily, at most once."""

    def __init__(self, model_path: Union[str, Path]):
        self.model_path = Path(model_path)
        self._session: Optional[onnxruntime.InferenceSession] = None
        self._lock = threading.Lock()
        self._geometry: Dict[str, InputGeometry] = {}

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    def _load_model(self) -> onnxruntime.InferenceSession:
        """Load ONNX model and initialize session."""
        if not self.model_path.is_file():
            logger.error(f"ONNX model not found: {self.model_path}")
            raise ModelUnavailableError(f"ONNX model not found: {self.model_path}")

        logger.info(f"Loading ONNX model from: {self.model_path}")
        try:
            session = onnxruntime.InferenceSession(
                str(self.model_path),
                providers=['CPUExecutionProvider']
            )
        except Exception as e:
            logger.error(f"Error loading ONNX model: {e}")
            raise ModelUnavailableError(f"Could not load ONNX model {self.model_path}: {e}") from e

        for node in session.get_inputs():
            logger.info(f"Input: {node.name} {node.shape}")
        for node in session.get_outputs():
            logger.info(f"Output: {node.name} {node.shape}")
        logger.info(f"Providers: {session.get_providers()}")
        return session

    def get_session(self) -> onnxruntime.InferenceSession:
        session = self._session
        if session is not None:
            return session
        with self._lock:
            if self._session is None:
                self._session = self._load_model()
            return self._session

    def get_metadata(self) -> Mapping[str, str]:
        """Custom metadata map embedded in the model."""
        return self.get_session().get_modelmeta().custom_metadata_map or {}

    def get_input_name(self) -> str:
        inputs = self.get_session().get_inputs()
        if not inputs or not inputs[0].name:
            raise ModelConfigurationError("Could not determine model input name")
        return inputs[0].name

    def get_input_geometry(self, input_name: str) -> InputGeometry:
        """Expected (height, width) for ``input_name``; static per model."""
        geometry = self._geometry.get(input_name)
        if geometry is not None:
            return geometry

        inputs = self.get_session().get_inputs()
        node = next((i for i in inputs if i.name == input_name), inputs[0] if inputs else None)
        shape = node.shape if node is not None else None
        geometry = expected_geometry(shape)
        if geometry is DEFAULT_GEOMETRY:
            logger.warning(f"Could not parse model input dims {shape}, "
                           f"using {DEFAULT_IMAGE_SIZE}x{DEFAULT_IMAGE_SIZE}")
        self._geometry[input_name] = geometry
        return geometry

    def run(self, input_name: str, input_array: np.ndarray) -> np.ndarray:
        """Run inference and return the first declared output."""
        session = self.get_session()
        try:
            start_time = time.time()
            outputs = session.run(None, {input_name: input_array})
            logger.debug(f"Inference completed in {time.time() - start_time:.3f}s")
        except Exception as e:
            logger.error(f"Error during inference: {e}")
            raise InferenceError(f"Inference failed: {e}") from e

        if not outputs:
            raise ModelConfigurationError("No outputs from model")
        return np.asarray(outputs[0])

    def get_model_info(self) -> Dict:
        """Get model information."""
        if self._session is None:
            return {'model_path': str(self.model_path), 'loaded': False}
        return {
            'model_path': str(self.model_path),
            'loaded': True,
            'inputs': [{'name': i.name, 'shape': i.shape} for i in self._session.get_inputs()],
            'outputs': [{'name': o.name, 'shape': o.shape} for o in self._session.get_outputs()],
            'providers': self._session.get_providers(),
        }


class ModelService:
    """Main service orchestrating label lookup, preprocessing and inference."""

    def __init__(self, model_path: Optional[Union[str, Path]] = None,
                 class_names_path: Optional[Union[str, Path]] = None,
                 scan_model_bytes: Optional[bool] = None):
        model_path = Path(model_path) if model_path else get_model_path()
        class_names_path = Path(class_names_path) if class_names_path else get_class_names_path()
        if scan_model_bytes is None:
            scan_model_bytes = config.LABEL_SCAN_MODEL_BYTES

        self.preprocessor = ImagePreprocessor()
        self.model = ONNXModel(model_path)
        self.label_resolver = LabelResolver(
            class_names_path,
            model_path,
            metadata_loader=self.model.get_metadata,
            scan_model_bytes_enabled=scan_model_bytes,
        )
        self._class_names: Optional[List[str]] = None
        self._labels_lock = threading.Lock()

    def load_class_names(self) -> List[str]:
        """Resolve class names once; later calls return the cached list."""
        # Cached even when the session failed to load, in which case the
        # metadata strategy was skipped; a model deployed later keeps these names.
        names = self._class_names
        if names is not None:
            return names
        with self._labels_lock:
            if self._class_names is None:
                self._class_names = self.label_resolver.resolve()
            return self._class_names

    @property
    def class_names(self) -> List[str]:
        return self.load_class_names()

    @property
    def is_ready(self) -> bool:
        return self._class_names is not None and self.model.is_loaded

    def warmup(self) -> None:
        """Resolve labels and load the session ahead of the first request."""
        start_time = time.time()
        self.load_class_names()
        self.model.get_session()
        logger.info(f"Model warmed up in {time.time() - start_time:.3f}s")

    def predict_from_buffer(self, image_bytes: bytes) -> PredictionResult:
        """
        Classify an encoded image.

        Raises:
            ImageDecodeError: the bytes are not a readable image
            ModelUnavailableError: the model is missing, corrupt or unusable
            InferenceError: the runtime failed while executing the model
        """
        start_time = time.time()
        class_names = self.load_class_names()
        self.model.get_session()

        input_name = self.model.get_input_name()
        geometry = self.model.get_input_geometry(input_name)

        tensor = self.preprocessor.preprocess(image_bytes, geometry.width, geometry.height)
        preprocess_time = time.time() - start_time

        output = self.model.run(input_name, tensor)
        logits = np.asarray(output, dtype=np.float64).ravel()
        if logits.size == 0:
            raise ModelConfigurationError("Model produced an empty output")

        probs = self.softmax(logits)
        top_index = int(np.argmax(probs))
        label = class_names[top_index] if top_index < len(class_names) else str(top_index)

        logger.debug(f"Predicted {label} ({probs[top_index]:.4f}) "
                     f"preprocess={preprocess_time:.3f}s total={time.time() - start_time:.3f}s")

        return PredictionResult(
            label=label,
            scores=logits.tolist(),
            probs=probs.tolist(),
            top_index=top_index,
        )

    @staticmethod
    def softmax(logits: Union[Sequence[float], np.ndarray]) -> np.ndarray:
        """Numerically stable softmax."""
        logits = np.asarray(logits, dtype=np.float64)
        exp_logits = np.exp(logits - np.max(logits))
        return exp_logits / np.sum(exp_logits)

    def get_service_info(self) -> Dict:
        """Get service information."""
        return {
            'model_info': self.model.get_model_info(),
            'ready': self.is_ready,
            'class_names': self._class_names,
        }


_service: Optional[ModelService] = None
_service_lock = threading.Lock()


def get_service() -> ModelService:
    """Process-wide service built from the configured asset paths."""
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                _service = ModelService()
    return _service


def warmup() -> None:
    get_service().warmup()


def predict_from_buffer(image_bytes: bytes) -> PredictionResult:
    return get_service().predict_from_buffer(image_bytes)


if __name__ == "__main__":
    # Usage: python model.py IMAGE [IMAGE ...]
    logger.info("Warming up model...")
    try:
        warmup()
    except InferenceError as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)

    for image_path in sys.argv[1:]:
        path = Path(image_path)
        if not path.exists():
            logger.warning(f"File not found: {path}")
            continue
        try:
            result = predict_from_buffer(path.read_bytes())
        except InferenceError as e:
            logger.error(f"Error predicting {path}: {e}")
            continue
        probs = ",".join(f"{p:.4f}" for p in result.probs)
        logits = ",".join(f"{s:.4f}" for s in result.scores)
        logger.info(f"{path.name} -> {result.label} top_prob:{result.confidence:.4f} "
                    f"probs:[{probs}] logits:[{logits}]")
