#!/usr/bin/env python3
"""
Mini-Turret desktop viewer
Live camera preview with HSV blob tracking and a trackbar settings panel
"""

import argparse
import json
import os
import sys
from typing import Dict, List, Optional

import cv2
import numpy as np

from blob_tracker import (
    BlobPipeline, CameraSettings, ColorMaskFilter, Config, DeviceUnavailable,
    IoFailure, PipelineResult, Target, TurretError,
)
from frame_source import FrameSource, PiCameraFrameSource, list_cameras

MAIN_WINDOW = "Mini-Turret"
PREVIEW_WINDOW = "Mini-Turret - Preview"
SETTINGS_WINDOW = "Mini-Turret - Settings"

CSV_HEADER = "frame,cx,cy,area,bbox_x,bbox_y,bbox_w,bbox_h"

# Trackbar name -> maximum position
TRACKBARS = {
    "H low": 255, "S low": 255, "V low": 255,
    "H high": 255, "S high": 255, "V high": 255,
    "Min area": 20000,
    "Flip": 1,
    "Gray preview": 1,
}

# =============================================================================
# SETTINGS PANEL
# =============================================================================

def settings_from_positions(positions: Dict[str, int],
                            initial: Optional[CameraSettings] = None) -> CameraSettings:
    """
    Build one settings snapshot from the trackbar positions of this frame.
    While the min area trackbar still sits where initial put it, initial's
    min_area is kept, since values above the trackbar range are clipped.
    """
    min_area = positions["Min area"]
    if initial is not None and min_area == positions_from_settings(initial)["Min area"]:
        min_area = initial.min_area
    return CameraSettings(
        lower_bound=(positions["H low"], positions["S low"], positions["V low"]),
        upper_bound=(positions["H high"], positions["S high"], positions["V high"]),
        min_area=min_area,
        flip_frame=positions["Flip"] != 0,
        gray_preview=positions["Gray preview"] != 0,
    )


def positions_from_settings(settings: CameraSettings) -> Dict[str, int]:
    h_lo, s_lo, v_lo = settings.lower_bound
    h_hi, s_hi, v_hi = settings.upper_bound
    return {
        "H low": h_lo, "S low": s_lo, "V low": v_lo,
        "H high": h_hi, "S high": s_hi, "V high": v_hi,
        "Min area": min(int(settings.min_area), TRACKBARS["Min area"]),
        "Flip": int(settings.flip_frame),
        "Gray preview": int(settings.gray_preview),
    }


class SettingsPanel:
    """Trackbar window; the trackbars are the only mutable copy of the settings"""

    def __init__(self, initial: CameraSettings):
        self.initial = initial
        cv2.namedWindow(SETTINGS_WINDOW, cv2.WINDOW_NORMAL)
        cv2.resizeWindow(SETTINGS_WINDOW, 400, 320)
        for name, value in positions_from_settings(initial).items():
            cv2.createTrackbar(name, SETTINGS_WINDOW, value, TRACKBARS[name], lambda _pos: None)

    def snapshot(self) -> CameraSettings:
        positions = {name: cv2.getTrackbarPos(name, SETTINGS_WINDOW) for name in TRACKBARS}
        return settings_from_positions(positions, self.initial)

# =============================================================================
# ERROR LATCH
# =============================================================================

class ErrorLatch:
    """
    Holds the first unacknowledged error.
    Errors reported while one is pending are counted, never swapped in.
    """

    def __init__(self):
        self.error = None
        self.suppressed = 0

    @property
    def pending(self) -> bool:
        return self.error is not None

    def report(self, error: Exception) -> bool:
        """Returns True if this error was latched, False if one was already pending"""
        if self.error is not None:
            self.suppressed += 1
            return False
        self.error = error
        print(f"Error ({type(error).__name__}): {error}")
        print("Processing suspended - press 'a' to acknowledge")
        return True

    def acknowledge(self) -> Optional[Exception]:
        error, self.error = self.error, None
        if error is not None:
            extra = f" ({self.suppressed} more suppressed)" if self.suppressed else ""
            print(f"Acknowledged: {error}{extra}")
        self.suppressed = 0
        return error


def step(source: FrameSource, pipeline: BlobPipeline, settings: CameraSettings,
         latch: ErrorLatch) -> Optional[PipelineResult]:
    """
    Read and process one frame. Nothing runs while an error is latched;
    a failure is latched and yields None for this frame.
    """
    if latch.pending:
        return None
    try:
        frame = source.read_frame(settings.flip_frame)
        return pipeline.process(frame, settings)
    except TurretError as e:
        latch.report(e)
        return None


def draw_error_banner(frame: np.ndarray, latch: ErrorLatch) -> np.ndarray:
    """Copy of frame with the latched error written across the top"""
    out = frame.copy()
    cv2.rectangle(out, (0, 0), (out.shape[1], 50), (0, 0, 0), -1)
    message = f"{type(latch.error).__name__}: {latch.error}"
    cv2.putText(out, message[:70], (10, 20), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (0, 0, 255), 1)
    footer = "Press 'a' to acknowledge"
    if latch.suppressed:
        footer += f" ({latch.suppressed} more)"
    cv2.putText(out, footer, (10, 42), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1)
    return out

# =============================================================================
# OUTPUT
# =============================================================================

def csv_rows(frame_num: int, targets: List[Target]) -> List[str]:
    rows = []
    for t in targets:
        x, y, w, h = t.bbox
        rows.append(f"{frame_num},{t.centroid[0]},{t.centroid[1]},{t.area:.1f},{x},{y},{w},{h}")
    return rows


def load_settings(path: str) -> CameraSettings:
    """Settings from a JSON file; defaults when the file does not exist yet"""
    if not os.path.exists(path):
        return CameraSettings.from_config()
    try:
        with open(path, 'r') as f:
            data = json.load(f)
        return CameraSettings.from_dict(data)
    except (OSError, ValueError, TypeError) as e:
        raise IoFailure(f"Could not load settings from {path}: {e}") from e


def save_settings(path: str, settings: CameraSettings):
    try:
        with open(path, 'w') as f:
            json.dump(settings.to_dict(), f, indent=2)
    except OSError as e:
        raise IoFailure(f"Could not save settings to {path}: {e}") from e
    print(f"Settings saved: {path}")


def next_camera(current, cameras: List[int]) -> Optional[int]:
    """Camera index after current in cameras, wrapping around"""
    if not cameras:
        return None
    if current not in cameras:
        return cameras[0]
    return cameras[(cameras.index(current) + 1) % len(cameras)]


def switch_camera(source: FrameSource, cameras: List[int]) -> int:
    """
    Connect source to the camera after its current one.

    Raises:
        DeviceUnavailable: no other camera was found; source stays as it was
    """
    camera = next_camera(source.device_id, cameras)
    if camera is None:
        raise DeviceUnavailable("No cameras found")
    source.connect(camera)
    return camera

# =============================================================================
# MAIN APPLICATION
# =============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Mini-Turret color blob viewer')
    parser.add_argument('--camera', type=int, default=Config.CAMERA_INDEX, help='Camera index')
    parser.add_argument('--source', type=str, help='Video file to use instead of a camera')
    parser.add_argument('--pi', action='store_true', help='Use the Raspberry Pi camera module')
    parser.add_argument('--settings', type=str, help='JSON settings file (loaded at start, saved on quit)')
    parser.add_argument('--mask-mode', choices=ColorMaskFilter.MODES, default=Config.MASK_MODE,
                        help='Mask cleanup mode')
    parser.add_argument('--csv', action='store_true', help='Print per-target CSV rows')
    parser.add_argument('--no-display', action='store_true', help='Run without windows (headless)')
    parser.add_argument('--frames', type=int, default=0, help='Stop after N frames (0 = no limit)')
    parser.add_argument('--list-cameras', action='store_true', help='List camera indices and exit')
    parser.add_argument('--strict', action='store_true',
                        help='Raise NotConnected instead of showing black frames when disconnected')
    parser.add_argument('--quiet', action='store_true', help='Less console output')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main application entry point"""
    args = parse_args(argv)

    if args.list_cameras:
        try:
            list_cameras(verbose=True)
        except IoFailure as e:
            print(f"Error: {e}")
            return 1
        return 0

    settings = CameraSettings.from_config()
    if args.settings:
        try:
            settings = load_settings(args.settings)
        except IoFailure as e:
            print(f"{e} - using defaults")

    verbose = False if args.quiet else None
    source_class = PiCameraFrameSource if args.pi else FrameSource
    source = source_class(blank_when_disconnected=False if args.strict else None, verbose=verbose)
    pipeline = BlobPipeline(ColorMaskFilter(mode=args.mask_mode))
    latch = ErrorLatch()

    device_id = args.source if args.source else args.camera
    try:
        source.connect(device_id)
    except DeviceUnavailable as e:
        latch.report(e)

    print("=" * 60)
    print("MINI-TURRET")
    print("=" * 60)
    print(f"Source: {device_id}{' (Pi camera)' if args.pi else ''}")
    print(f"HSV range: {settings.lower_bound} - {settings.upper_bound}")
    print(f"Min area: {settings.min_area} pixels")
    print(f"Mask mode: {args.mask_mode}")
    print(f"Frame size: {Config.FRAME_WIDTH}x{Config.FRAME_HEIGHT}")
    if args.csv:
        print(CSV_HEADER)

    if args.no_display:
        return run_headless(source, pipeline, settings, latch, args)

    panel = SettingsPanel(settings)
    cv2.namedWindow(MAIN_WINDOW, cv2.WINDOW_NORMAL)
    show_preview = True
    cv2.namedWindow(PREVIEW_WINDOW, cv2.WINDOW_NORMAL)

    print("\nControls:")
    print("  'q' - Quit application")
    print("  's' - Save current frame snapshot")
    print("  'n' - Switch to next camera")
    print("  'p' - Toggle preview window")
    print("  'a' - Acknowledge error")

    last_display = np.zeros((Config.FRAME_HEIGHT, Config.FRAME_WIDTH, 3), dtype=np.uint8)
    try:
        while True:
            settings = panel.snapshot()
            result = step(source, pipeline, settings, latch)

            if result is not None:
                last_display = result.overlay
                if args.csv:
                    for row in csv_rows(pipeline.frame_count, result.targets):
                        print(row)
                if show_preview:
                    cv2.imshow(PREVIEW_WINDOW, pipeline.preview(result, settings))

            if latch.pending:
                cv2.imshow(MAIN_WINDOW, draw_error_banner(last_display, latch))
            else:
                cv2.imshow(MAIN_WINDOW, last_display)

            key = cv2.waitKey(1) & 0xFF
            if key == ord('q'):
                print("Quit requested by user")
                break
            elif key == ord('a'):
                latch.acknowledge()
            elif key == ord('s'):
                filename = f"turret_snapshot_{pipeline.frame_count:06d}.jpg"
                cv2.imwrite(filename, last_display)
                print(f"Saved snapshot: {filename}")
            elif key == ord('p'):
                show_preview = not show_preview
                if show_preview:
                    cv2.namedWindow(PREVIEW_WINDOW, cv2.WINDOW_NORMAL)
                else:
                    cv2.destroyWindow(PREVIEW_WINDOW)
                print(f"Preview window: {'ON' if show_preview else 'OFF'}")
            elif key == ord('n') and not args.source:
                try:
                    switch_camera(source, list_cameras(verbose=verbose))
                except TurretError as e:
                    latch.report(e)

    except KeyboardInterrupt:
        print("\nInterrupted by user (Ctrl+C)")

    finally:
        print("Shutting down...")
        source.disconnect()
        cv2.destroyAllWindows()
        if args.settings:
            try:
                save_settings(args.settings, settings)
            except IoFailure as e:
                print(f"Error: {e}")
        print(f"Frames processed: {pipeline.frame_count}")

    return 0


def run_headless(source: FrameSource, pipeline: BlobPipeline, settings: CameraSettings,
                 latch: ErrorLatch, args: argparse.Namespace) -> int:
    """
    Process frames without windows. A failed connect is acknowledged right
    away so the disconnected-read policy decides what happens next; any
    later error stops the run since nobody can acknowledge it. A video file
    that runs out of frames ends the run normally.
    """
    if latch.pending:
        latch.acknowledge()
    status = 0
    try:
        while not args.frames or pipeline.frame_count < args.frames:
            result = step(source, pipeline, settings, latch)
            if result is None:
                if isinstance(latch.error, IoFailure) and isinstance(source.device_id, str):
                    print("End of video")
                else:
                    status = 1
                break
            if args.csv:
                for row in csv_rows(pipeline.frame_count, result.targets):
                    print(row)
    except KeyboardInterrupt:
        print("\nInterrupted by user (Ctrl+C)")
    finally:
        source.disconnect()
        print(f"Frames processed: {pipeline.frame_count}")
    return status


if __name__ == "__main__":
    sys.exit(main())
