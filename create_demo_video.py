"""
Create demo videos for trying Mini-Turret without a camera.
Red blobs of different sizes move over a noisy background with off-color distractors.
"""

import argparse
import math

import cv2
import numpy as np

RED = (0, 0, 255)  # BGR
DISTRACTOR_COLORS = [(255, 0, 0), (0, 255, 0), (255, 255, 0), (255, 0, 255)]


def render_demo_frame(frame_num: int, fps: int = 30, width: int = 1280, height: int = 960,
                      rng: np.random.Generator = None) -> np.ndarray:
    """
    Draw one demo frame.

    Contents:
    - a large red disc orbiting the frame center
    - a red square sweeping left to right
    - a few tiny red specks (should be removed by the mask cleanup)
    - green/blue/cyan/magenta distractors (never in the red range)

    Args:
        frame_num: index of the frame, drives the motion
        fps: frames per second used to convert frame_num to time
        width, height: frame size
        rng: random source for background noise and specks; seeded per frame if omitted

    Returns:
        BGR frame
    """
    if rng is None:
        rng = np.random.default_rng(frame_num)
    t = frame_num / fps

    frame = rng.integers(10, 40, (height, width, 3), dtype=np.uint8)

    for i, color in enumerate(DISTRACTOR_COLORS):
        dx = int(width * (0.15 + 0.2 * i))
        dy = int(height * 0.8 + 30 * math.sin(t + i))
        cv2.circle(frame, (dx, dy), 30, color, -1)

    orbit = min(width, height) // 4
    cx = int(width / 2 + orbit * math.cos(2 * math.pi * t / 5))
    cy = int(height / 2 + orbit * math.sin(2 * math.pi * t / 5))
    cv2.circle(frame, (cx, cy), 60, RED, -1)

    side = 70
    sx = int((width - side) * ((t / 8) % 1.0))
    sy = height // 6
    cv2.rectangle(frame, (sx, sy), (sx + side, sy + side), RED, -1)

    for _ in range(5):
        px = int(rng.integers(0, width))
        py = int(rng.integers(0, height))
        cv2.circle(frame, (px, py), 1, RED, -1)

    return frame


def create_demo_video(filename: str = "demo.mp4", duration: int = 10, fps: int = 30,
                      width: int = 1280, height: int = 960) -> bool:
    """Write a demo video; returns False when no video writer could be opened"""
    total_frames = duration * fps

    fourcc = cv2.VideoWriter_fourcc(*'mp4v')
    out = cv2.VideoWriter(filename, fourcc, fps, (width, height))
    if not out.isOpened():
        print("Warning: Could not open video writer with mp4v, trying XVID...")
        fourcc = cv2.VideoWriter_fourcc(*'XVID')
        out = cv2.VideoWriter(filename, fourcc, fps, (width, height))

    if not out.isOpened():
        print("Error: Could not initialize video writer")
        return False

    print(f"Creating demo video: {filename}")
    print(f"Duration: {duration}s, FPS: {fps}, Total frames: {total_frames}")
    print(f"Resolution: {width}x{height}")

    for frame_num in range(total_frames):
        out.write(render_demo_frame(frame_num, fps, width, height))

        if total_frames >= 10 and frame_num % (total_frames // 10) == 0:
            print(f"Progress: {frame_num / total_frames * 100:.1f}%")

    out.release()
    print(f"Demo video created: {filename}")
    print(f"Try it with: python main_turret.py --source {filename}")
    return True


def main():
    parser = argparse.ArgumentParser(description='Create a demo video for Mini-Turret')
    parser.add_argument('--output', type=str, default='demo.mp4', help='Output filename')
    parser.add_argument('--duration', type=int, default=10, help='Video duration in seconds')
    parser.add_argument('--fps', type=int, default=30, help='Frames per second')
    args = parser.parse_args()

    create_demo_video(args.output, args.duration, args.fps)


if __name__ == "__main__":
    main()
