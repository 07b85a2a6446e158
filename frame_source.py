"""
Capture devices for Mini-Turret
OpenCV VideoCapture source (webcams, video files) and a Picamera2 source for the Pi
"""

from typing import List, Optional, Union

import cv2
import numpy as np

from blob_tracker import Config, DeviceUnavailable, NotConnected, VisionOperationFailed, IoFailure

DeviceId = Union[int, str]


def blank_frame() -> np.ndarray:
    """Black canonical-size BGR frame"""
    return np.zeros((Config.FRAME_HEIGHT, Config.FRAME_WIDTH, 3), dtype=np.uint8)


def list_cameras(max_index: int = 5, verbose: Optional[bool] = None) -> List[int]:
    """
    Probe camera indices 0..max_index-1 and return the ones that open.
    Used to fill the camera selection; busy cameras are reported missing.
    """
    found = []
    for index in range(max_index):
        try:
            cap = cv2.VideoCapture(index)
            try:
                if cap.isOpened():
                    found.append(index)
            finally:
                cap.release()
        except cv2.error as e:
            raise IoFailure(f"Probing camera {index} failed: {e}") from e
    if verbose is None:
        verbose = Config.VERBOSE
    if verbose:
        print(f"Cameras found: {found if found else 'none'}")
    return found


class FrameSource:
    """
    Capture device wrapper with a Disconnected -> Connected -> Disconnected lifecycle.

    read_frame() returns BGR frames mirrored on request and resized to the
    canonical resolution. While disconnected it returns a black frame, or
    raises NotConnected when blank_when_disconnected is False.
    """

    def __init__(self, blank_when_disconnected: Optional[bool] = None, verbose: Optional[bool] = None):
        if blank_when_disconnected is None:
            blank_when_disconnected = Config.BLANK_WHEN_DISCONNECTED
        self.blank_when_disconnected = blank_when_disconnected
        self.verbose = Config.VERBOSE if verbose is None else verbose
        self._device = None
        self._device_id = None

    @property
    def is_connected(self) -> bool:
        return self._device is not None

    @property
    def device_id(self) -> Optional[DeviceId]:
        return self._device_id

    def connect(self, device_id: DeviceId):
        """
        Open a capture device.

        Args:
            device_id: camera index, or a video file path

        Raises:
            DeviceUnavailable: the device could not be opened
        """
        if self.is_connected:
            self.disconnect()

        self._device = self._open(device_id)
        self._device_id = device_id
        if self.verbose:
            print(f"Connected to capture device: {device_id}")

    def disconnect(self):
        """Release the device; a no-op when nothing is connected"""
        if self._device is None:
            return
        device, self._device = self._device, None
        device_id, self._device_id = self._device_id, None
        self._release(device)
        if self.verbose:
            print(f"Disconnected capture device: {device_id}")

    def read_frame(self, flip: bool = False) -> np.ndarray:
        """
        Grab the next frame.

        Args:
            flip: mirror the frame left-right before resizing

        Returns:
            New BGR frame of FRAME_WIDTH x FRAME_HEIGHT

        Raises:
            NotConnected: disconnected and blank frames are disabled
            IoFailure: the device did not deliver a frame
            VisionOperationFailed: flipping or resizing failed
        """
        if not self.is_connected:
            if self.blank_when_disconnected:
                return blank_frame()
            raise NotConnected("read_frame called without a connected capture device")

        frame = self._grab(self._device)
        if frame is None or frame.size == 0:
            raise IoFailure(f"Failed to read frame from device {self._device_id}")

        try:
            if flip:
                frame = cv2.flip(frame, 1)
            # INTER_AREA averages source pixels, which avoids aliasing when downscaling
            return cv2.resize(frame, (Config.FRAME_WIDTH, Config.FRAME_HEIGHT),
                              interpolation=cv2.INTER_AREA)
        except cv2.error as e:
            raise VisionOperationFailed(f"read_frame: {e}") from e

    def _open(self, device_id: DeviceId):
        try:
            cap = cv2.VideoCapture(device_id)
        except cv2.error as e:
            raise DeviceUnavailable(f"Could not open capture device {device_id}: {e}") from e

        if not cap.isOpened():
            cap.release()
            raise DeviceUnavailable(f"Could not open capture device {device_id}")

        if not isinstance(device_id, str):
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, Config.FRAME_WIDTH)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, Config.FRAME_HEIGHT)
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)  # minimal buffer for low latency
        return cap

    def _grab(self, device) -> Optional[np.ndarray]:
        try:
            ret, frame = device.read()
        except cv2.error as e:
            raise IoFailure(f"Failed to read frame from device {self._device_id}: {e}") from e
        return frame if ret else None

    def _release(self, device):
        device.release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()


class PiCameraFrameSource(FrameSource):
    """FrameSource over a Raspberry Pi camera module (picamera2)"""

    def _open(self, device_id: DeviceId):
        try:
            from picamera2 import Picamera2
        except ImportError as e:
            raise DeviceUnavailable("picamera2 is not installed (pip install picamera2)") from e

        try:
            picam2 = Picamera2(camera_num=int(device_id))
            camera_config = picam2.create_video_configuration(
                main={"size": (Config.FRAME_WIDTH, Config.FRAME_HEIGHT), "format": "RGB888"},
                buffer_count=2
            )
            picam2.configure(camera_config)
            picam2.start()
        except (RuntimeError, IndexError, ValueError) as e:
            raise DeviceUnavailable(f"Could not open Pi camera {device_id}: {e}") from e
        return picam2

    def _grab(self, device) -> Optional[np.ndarray]:
        try:
            frame_rgb = device.capture_array("main")
        except RuntimeError as e:
            raise IoFailure(f"Failed to capture from Pi camera {self._device_id}: {e}") from e
        try:
            return cv2.cvtColor(frame_rgb, cv2.COLOR_RGB2BGR)
        except cv2.error as e:
            raise VisionOperationFailed(f"read_frame: {e}") from e

    def _release(self, device):
        device.stop()
        device.close()
