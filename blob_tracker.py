"""
Color Blob Tracking Pipeline for Mini-Turret
Filters a camera frame by an HSV range, finds colored blobs and draws the overlay.

Single module holding the per-frame pipeline; capture lives in frame_source.py
and the window loop in main_turret.py.
"""

import os
from dataclasses import dataclass, field, asdict, replace as dc_replace
from typing import Tuple, Optional, List, Dict, Any, NamedTuple, Sequence

import cv2
import numpy as np

# =============================================================================
# CONFIGURATION & PARAMETERS
# =============================================================================

class Config:
    """Default parameters for the turret vision pipeline"""

    # Capture device (camera index); override with TURRET_CAMERA
    CAMERA_INDEX = int(os.getenv("TURRET_CAMERA", "0"))

    # Canonical frame size every captured frame is resized to
    FRAME_WIDTH = 640
    FRAME_HEIGHT = 480

    # HSV thresholds (inclusive), each channel 0-255
    HSV_LOWER = (0, 120, 70)
    HSV_UPPER = (10, 255, 255)

    # Contours must enclose strictly more than this many pixels
    MIN_AREA = 500.0

    FLIP_FRAME = False
    GRAY_PREVIEW = False

    # Mask cleanup: "open_close", "close", "blur" or "none"
    MASK_MODE = "open_close"
    BLUR_ENABLED = True
    BLUR_KERNEL = (15, 15)
    OPEN_KERNEL = (7, 7)
    OPEN_ITERATIONS = 2
    CLOSE_KERNEL = (3, 3)
    CLOSE_ITERATIONS = 4
    CLOSE_ONLY_KERNEL = (10, 10)
    CLOSE_ONLY_ITERATIONS = 2
    BOX_BLUR_KERNEL = (5, 5)

    # Overlay (BGRA so that 4-channel frames get opaque shapes)
    BOX_COLOR = (0, 0, 255, 255)
    MARKER_COLOR = (230, 255, 255, 255)
    BOX_THICKNESS = 3
    MARKER_RADIUS = 5
    LABEL_OFFSET = 10
    LABEL_SCALE = 1.0
    LABEL_THICKNESS = 2
    LINE_TYPE = cv2.LINE_8

    # Disconnected sources hand out a black frame instead of raising NotConnected
    BLANK_WHEN_DISCONNECTED = os.getenv("TURRET_STRICT") != "1"

    # Console status output from library code
    VERBOSE = True

# =============================================================================
# ERRORS
# =============================================================================

class TurretError(Exception):
    """Base class for every error raised by the turret pipeline"""


class DeviceUnavailable(TurretError):
    """The capture device could not be opened"""


class NotConnected(TurretError):
    """An operation needed an open capture device"""


class VisionOperationFailed(TurretError):
    """An image-processing call failed or was given an unusable image"""


class IoFailure(TurretError):
    """Non-vision I/O failed (frame grab, device enumeration)"""

# =============================================================================
# SETTINGS SNAPSHOT
# =============================================================================

HSV = Tuple[int, int, int]


def _check_bound(name: str, value: Sequence[int]) -> HSV:
    values = tuple(int(v) for v in value)
    if len(values) != 3:
        raise ValueError(f"{name} needs 3 channels, got {len(values)}")
    for v in values:
        if not 0 <= v <= 255:
            raise ValueError(f"{name} channel out of range 0-255: {v}")
    return values


@dataclass(frozen=True)
class CameraSettings:
    """
    Immutable snapshot of the tunable settings, taken once per frame.
    The settings panel builds a new snapshot instead of mutating this one.
    """
    lower_bound: HSV = Config.HSV_LOWER
    upper_bound: HSV = Config.HSV_UPPER
    min_area: float = Config.MIN_AREA
    flip_frame: bool = Config.FLIP_FRAME
    gray_preview: bool = Config.GRAY_PREVIEW

    def __post_init__(self):
        object.__setattr__(self, "lower_bound", _check_bound("lower_bound", self.lower_bound))
        object.__setattr__(self, "upper_bound", _check_bound("upper_bound", self.upper_bound))
        object.__setattr__(self, "min_area", float(self.min_area))
        object.__setattr__(self, "flip_frame", bool(self.flip_frame))
        object.__setattr__(self, "gray_preview", bool(self.gray_preview))

    @classmethod
    def from_config(cls) -> "CameraSettings":
        return cls(Config.HSV_LOWER, Config.HSV_UPPER, Config.MIN_AREA,
                   Config.FLIP_FRAME, Config.GRAY_PREVIEW)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CameraSettings":
        """Build settings from a (possibly partial) dict; missing keys keep defaults"""
        known = {k: data[k] for k in ("lower_bound", "upper_bound", "min_area",
                                      "flip_frame", "gray_preview") if k in data}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["lower_bound"] = list(self.lower_bound)
        data["upper_bound"] = list(self.upper_bound)
        return data

    def replace(self, **changes) -> "CameraSettings":
        return dc_replace(self, **changes)

# =============================================================================
# RESULT TYPES
# =============================================================================

BBox = Tuple[int, int, int, int]


@dataclass(frozen=True)
class Target:
    """A contour that passed the area filter. No identity across frames."""
    centroid: Tuple[int, int]
    area: float
    bbox: BBox
    centroid_estimated: bool = False
    contour: Optional[np.ndarray] = field(default=None, compare=False, repr=False)


class PipelineResult(NamedTuple):
    mask: np.ndarray
    targets: List[Target]
    overlay: np.ndarray


class DisplayFrame(NamedTuple):
    width: int
    height: int
    pixels: bytes

# =============================================================================
# HELPERS
# =============================================================================

def _check_image(image: np.ndarray, channels: Tuple[int, ...], what: str):
    """Raise VisionOperationFailed unless image is a non-empty uint8 array with allowed channels"""
    if not isinstance(image, np.ndarray) or image.size == 0:
        raise VisionOperationFailed(f"{what}: empty or missing image")
    if image.dtype != np.uint8:
        raise VisionOperationFailed(f"{what}: expected uint8 pixels, got {image.dtype}")
    n = 1 if image.ndim == 2 else (image.shape[2] if image.ndim == 3 else -1)
    if n not in channels:
        raise VisionOperationFailed(f"{what}: unsupported image shape {image.shape}")


def _ellipse(size: Tuple[int, int]) -> np.ndarray:
    return cv2.getStructuringElement(cv2.MORPH_ELLIPSE, size)


def apply_mask(image: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Keep only the pixels of image where mask is foreground"""
    try:
        return cv2.bitwise_and(image, image, mask=mask)
    except cv2.error as e:
        raise VisionOperationFailed(f"apply_mask: {e}") from e


def to_rgba(image: np.ndarray) -> DisplayFrame:
    """
    Convert a BGR, BGRA or single-channel image into the display sink format.

    Returns:
        DisplayFrame(width, height, pixels) with pixels as contiguous,
        non-premultiplied RGBA bytes, row-major
    """
    _check_image(image, (1, 3, 4), "to_rgba")
    codes = {1: cv2.COLOR_GRAY2RGBA, 3: cv2.COLOR_BGR2RGBA, 4: cv2.COLOR_BGRA2RGBA}
    channels = 1 if image.ndim == 2 else image.shape[2]
    try:
        rgba = cv2.cvtColor(image, codes[channels])
    except cv2.error as e:
        raise VisionOperationFailed(f"to_rgba: {e}") from e
    rgba = np.ascontiguousarray(rgba)
    return DisplayFrame(rgba.shape[1], rgba.shape[0], rgba.tobytes())

# =============================================================================
# COLOR MASK FILTER
# =============================================================================

class ColorMaskFilter:
    """
    HSV range filter producing a cleaned binary mask.

    Steps: optional Gaussian pre-blur, BGR->HSV, inclusive inRange test,
    then morphological cleanup selected by mode.
    """

    MODES = ("open_close", "close", "blur", "none")

    def __init__(self, mode: str = None, blur: bool = None,
                 blur_kernel: Tuple[int, int] = None,
                 open_kernel: Tuple[int, int] = None, open_iterations: int = None,
                 close_kernel: Tuple[int, int] = None, close_iterations: int = None):
        self.mode = mode if mode is not None else Config.MASK_MODE
        if self.mode not in self.MODES:
            raise ValueError(f"Unknown mask mode: {self.mode!r} (expected one of {self.MODES})")

        self.blur = Config.BLUR_ENABLED if blur is None else blur
        self.blur_kernel = blur_kernel or Config.BLUR_KERNEL

        if self.mode == "close":
            self.close_kernel = _ellipse(close_kernel or Config.CLOSE_ONLY_KERNEL)
            self.close_iterations = Config.CLOSE_ONLY_ITERATIONS if close_iterations is None else close_iterations
        else:
            self.close_kernel = _ellipse(close_kernel or Config.CLOSE_KERNEL)
            self.close_iterations = Config.CLOSE_ITERATIONS if close_iterations is None else close_iterations
        self.open_kernel = _ellipse(open_kernel or Config.OPEN_KERNEL)
        self.open_iterations = Config.OPEN_ITERATIONS if open_iterations is None else open_iterations

    def _morph(self, mask: np.ndarray, op: int, kernel: np.ndarray, iterations: int) -> np.ndarray:
        if iterations <= 0:
            return mask
        # constant border: pixels outside the image never erode or grow the mask
        return cv2.morphologyEx(mask, op, kernel, iterations=iterations,
                                borderType=cv2.BORDER_CONSTANT)

    def filter(self, image: np.ndarray, lower: Sequence[int], upper: Sequence[int]) -> np.ndarray:
        """
        Threshold an image against an inclusive HSV box.

        Args:
            image: BGR (or BGRA) uint8 frame
            lower, upper: (h, s, v) bounds, 0-255 per channel

        Returns:
            New single-channel uint8 mask, 255 where the pixel is in range
        """
        _check_image(image, (3, 4), "filter")
        try:
            lower_arr = np.array(_check_bound("lower", lower), dtype=np.uint8)
            upper_arr = np.array(_check_bound("upper", upper), dtype=np.uint8)
        except ValueError as e:
            raise VisionOperationFailed(f"filter: {e}") from e

        try:
            if image.shape[2] == 4:
                image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
            if self.blur:
                image = cv2.GaussianBlur(image, self.blur_kernel, 0)

            hsv = cv2.cvtColor(image, cv2.COLOR_BGR2HSV)
            mask = cv2.inRange(hsv, lower_arr, upper_arr)

            if self.mode == "open_close":
                mask = self._morph(mask, cv2.MORPH_OPEN, self.open_kernel, self.open_iterations)
                mask = self._morph(mask, cv2.MORPH_CLOSE, self.close_kernel, self.close_iterations)
            elif self.mode == "close":
                mask = self._morph(mask, cv2.MORPH_CLOSE, self.close_kernel, self.close_iterations)
            elif self.mode == "blur":
                mask = cv2.blur(mask, Config.BOX_BLUR_KERNEL)
                _, mask = cv2.threshold(mask, 127, 255, cv2.THRESH_BINARY)
        except cv2.error as e:
            raise VisionOperationFailed(f"filter: {e}") from e

        return mask

# =============================================================================
# CONTOURS & TARGETS
# =============================================================================

class ContourExtractor:
    """Outer boundaries of the foreground regions in a binary mask"""

    def extract(self, mask: np.ndarray) -> List[np.ndarray]:
        _check_image(mask, (1,), "extract")
        if mask.ndim == 3:
            mask = mask[:, :, 0]
        try:
            # [-2] picks the contour list on both the 2- and 3-tuple return styles
            contours = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)[-2]
        except cv2.error as e:
            raise VisionOperationFailed(f"extract: {e}") from e
        return list(contours)


def _as_contour(contour) -> np.ndarray:
    arr = np.asarray(contour)
    if arr.dtype.kind == "f":
        arr = arr.astype(np.float32)
    else:
        arr = arr.astype(np.int32)
    return arr.reshape(-1, 1, 2)


def centroid_of(contour) -> Optional[Tuple[int, int]]:
    """
    Centroid from image moments, truncated toward zero.

    Returns:
        (x, y), or None when the zeroth moment is zero (degenerate contour)
    """
    m = cv2.moments(_as_contour(contour))
    if m["m00"] == 0:
        return None
    return int(m["m10"] / m["m00"]), int(m["m01"] / m["m00"])


class TargetSelector:
    """Area filter and centroid computation for one frame of contours"""

    def select(self, contours: Sequence[np.ndarray], min_area: float) -> List[Target]:
        """
        Keep contours enclosing strictly more than min_area.

        Degenerate contours (zero moment) fall back to their bounding box
        center and are flagged with centroid_estimated=True.
        """
        targets = []
        for raw in contours:
            contour = _as_contour(raw)
            try:
                area = float(cv2.contourArea(contour))
                bbox = tuple(int(v) for v in cv2.boundingRect(contour))
            except cv2.error as e:
                raise VisionOperationFailed(f"select: {e}") from e

            if area <= min_area:
                continue

            centroid = centroid_of(contour)
            estimated = centroid is None
            if estimated:
                x, y, w, h = bbox
                centroid = (x + w // 2, y + h // 2)

            targets.append(Target(centroid, area, bbox, estimated, contour))
        return targets

# =============================================================================
# OVERLAY
# =============================================================================

def format_label(target: Target) -> str:
    cx, cy = target.centroid
    return f"{cx}, {cy} :: {target.area:.1f}"


class OverlayRenderer:
    """Draws boxes, centroid markers and labels onto a copy of the frame"""

    def __init__(self, box_color=None, marker_color=None, line_type: int = None):
        self.box_color = box_color or Config.BOX_COLOR
        self.marker_color = marker_color or Config.MARKER_COLOR
        self.line_type = Config.LINE_TYPE if line_type is None else line_type

    def render(self, base_image: np.ndarray, targets: Sequence[Target], min_area: float) -> np.ndarray:
        """
        Args:
            base_image: BGR or BGRA frame, left untouched
            targets: targets of this frame
            min_area: targets at or below this area are not drawn

        Returns:
            Annotated copy of base_image
        """
        _check_image(base_image, (1, 3, 4), "render")
        out = base_image.copy()
        try:
            for target in targets:
                if target.area <= min_area:
                    continue
                x, y, w, h = target.bbox
                cv2.rectangle(out, (x, y), (x + w - 1, y + h - 1), self.box_color,
                              Config.BOX_THICKNESS, self.line_type)
                cv2.circle(out, target.centroid, Config.MARKER_RADIUS, self.marker_color,
                           -1, self.line_type)
                # y may go negative for targets touching the top edge; drawn off-canvas
                cv2.putText(out, format_label(target), (x, y - Config.LABEL_OFFSET),
                            cv2.FONT_HERSHEY_PLAIN, Config.LABEL_SCALE, self.marker_color,
                            Config.LABEL_THICKNESS, self.line_type)
        except cv2.error as e:
            raise VisionOperationFailed(f"render: {e}") from e
        return out

# =============================================================================
# PIPELINE
# =============================================================================

class BlobPipeline:
    """
    Per-frame pipeline: mask -> contours -> targets -> overlay.
    Keeps the latest raw and filtered frame for the preview window.
    Not safe to share between threads.
    """

    def __init__(self, mask_filter: ColorMaskFilter = None,
                 extractor: ContourExtractor = None,
                 selector: TargetSelector = None,
                 renderer: OverlayRenderer = None):
        self.mask_filter = mask_filter or ColorMaskFilter()
        self.extractor = extractor or ContourExtractor()
        self.selector = selector or TargetSelector()
        self.renderer = renderer or OverlayRenderer()

        self.last_frame = None
        self.last_filtered = None
        self.frame_count = 0

    def process(self, image: np.ndarray, settings: CameraSettings) -> PipelineResult:
        """
        Run every stage on one frame with a single settings snapshot.

        Returns:
            PipelineResult(mask, targets, overlay)
        """
        mask = self.mask_filter.filter(image, settings.lower_bound, settings.upper_bound)
        contours = self.extractor.extract(mask)
        targets = self.selector.select(contours, settings.min_area)
        overlay = self.renderer.render(image, targets, settings.min_area)

        self.frame_count += 1
        self.last_frame = image
        self.last_filtered = apply_mask(image, mask)
        return PipelineResult(mask, targets, overlay)

    def preview(self, result: PipelineResult, settings: CameraSettings) -> np.ndarray:
        """Mask (as BGR) in gray preview mode, otherwise the color pixels kept by the mask"""
        if settings.gray_preview or self.last_filtered is None:
            return cv2.cvtColor(result.mask, cv2.COLOR_GRAY2BGR)
        return self.last_filtered
