"""
Class-name resolution for the classifier.

Strategies are tried in order and the first one that yields a list wins:

1. an explicit JSON label file,
2. label keys in the model's custom metadata,
3. a best-effort scan of the raw model bytes for label text,
4. the built-in ``["food", "not_food"]`` default.

Every strategy returns ``None`` when it does not apply, so the chain never
raises.
"""
import json
import re
import logging
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_CLASS_NAMES = ["food", "not_food"]

METADATA_LABEL_KEYS = ("labels", "classes", "class_names", "label_names", "labels_json")

_SEPARATORS = re.compile(r"[,;\n]+")
_ARRAY_LITERAL = re.compile(r"\[[^\]]+\]")
_KEYWORD_RUN = re.compile(
    r"(?:labels|class_names|classes)[\s\"':=]{0,8}"
    r"((?:[\w\-/ ]|[,;](?=[\w\-/ ])){1,120})(?![\w\-/ ,;])",
    re.IGNORECASE | re.ASCII,
)

MetadataLoader = Callable[[], Mapping[str, str]]


_NOT_JSON = object()


def _load_json(raw: str):
    try:
        return json.loads(raw)
    except (TypeError, ValueError, RecursionError):
        return _NOT_JSON


def _string_list(parsed) -> Optional[List[str]]:
    if isinstance(parsed, list) and all(isinstance(x, str) for x in parsed):
        return parsed
    return None


def parse_string_array(raw: str) -> Optional[List[str]]:
    """Parse ``raw`` as a JSON array of strings."""
    return _string_list(_load_json(raw))


def split_label_text(raw: str) -> Optional[List[str]]:
    """Split comma/semicolon/newline separated text, dropping blanks."""
    parts = [part.strip() for part in _SEPARATORS.split(raw)]
    parts = [part for part in parts if part]
    return parts or None


def load_label_file(path: Path) -> Optional[List[str]]:
    try:
        if not path.is_file():
            return None
        raw = path.read_bytes().decode("utf-8-sig", errors="replace")
    except OSError as e:
        logger.warning(f"Could not read label file {path}: {e}")
        return None

    names = parse_string_array(raw)
    if names is None:
        logger.warning(f"Label file {path} is not a JSON array of strings, ignoring it")
    return names


def labels_from_metadata(metadata: Mapping[str, str]) -> Optional[List[str]]:
    """Look for class names under one of the known metadata keys."""
    if not metadata:
        return None
    lowered = {str(key).lower(): value for key, value in metadata.items()}

    for key in METADATA_LABEL_KEYS:
        raw = lowered.get(key)
        if not raw or not isinstance(raw, str):
            continue
        parsed = _load_json(raw)
        if parsed is _NOT_JSON:
            names = split_label_text(raw)
        else:
            names = _string_list(parsed)
        if names:
            return names
    return None


def scan_model_bytes(model_path: Path) -> Optional[List[str]]:
    """
    Best-effort search for label text inside a serialized model.

    Exporters sometimes leave a JSON array or a ``labels: a,b`` string in
    the protobuf. This is a last resort and can return garbage for models
    that embed unrelated bracketed text.
    """
    try:
        text = model_path.read_bytes().decode("utf-8", errors="replace")
    except OSError as e:
        logger.debug(f"Could not read model bytes from {model_path}: {e}")
        return None

    match = _ARRAY_LITERAL.search(text)
    if match:
        names = parse_string_array(match.group(0))
        if names:
            return names

    match = _KEYWORD_RUN.search(text)
    if match and match.group(1):
        return split_label_text(match.group(1))
    return None


class LabelResolver:
    """Runs the label strategies in priority order."""

    def __init__(self, label_path: Path, model_path: Path,
                 metadata_loader: Optional[MetadataLoader] = None,
                 scan_model_bytes_enabled: bool = True):
        self.label_path = Path(label_path)
        self.model_path = Path(model_path)
        self.metadata_loader = metadata_loader
        self.scan_model_bytes_enabled = scan_model_bytes_enabled

    def _from_file(self) -> Optional[List[str]]:
        return load_label_file(self.label_path)

    def _from_metadata(self) -> Optional[List[str]]:
        if self.metadata_loader is None:
            return None
        try:
            metadata = self.metadata_loader()
        except Exception as e:
            logger.debug(f"Model metadata unavailable for label lookup: {e}")
            return None
        return labels_from_metadata(metadata)

    def _from_model_bytes(self) -> Optional[List[str]]:
        if not self.scan_model_bytes_enabled:
            return None
        return scan_model_bytes(self.model_path)

    def strategies(self) -> Sequence[Callable[[], Optional[List[str]]]]:
        return (self._from_file, self._from_metadata, self._from_model_bytes)

    def resolve(self) -> List[str]:
        for strategy in self.strategies():
            names = strategy()
            if names:
                logger.info(f"Resolved {len(names)} class names via {strategy.__name__.lstrip('_')}")
                return list(names)

        logger.warning(f"No class names found, using defaults {DEFAULT_CLASS_NAMES}")
        return list(DEFAULT_CLASS_NAMES)
