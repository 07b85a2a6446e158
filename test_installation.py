"""
Test script to verify Mini-Turret installation and dependencies.
Runs under pytest, or directly: python test_installation.py
"""

import sys


def test_imports():
    """Test if all required modules can be imported"""
    import cv2
    import numpy as np
    print(f"✓ OpenCV version: {cv2.__version__}")
    print(f"✓ NumPy version: {np.__version__}")

    # The pipeline relies on these OpenCV entry points
    for name in ("cvtColor", "inRange", "morphologyEx", "findContours", "moments",
                 "contourArea", "boundingRect", "putText", "VideoCapture"):
        assert hasattr(cv2, name), f"cv2.{name} missing"


def test_turret_modules():
    """Test if the turret modules import and the pipeline can be built"""
    from blob_tracker import BlobPipeline, CameraSettings
    from frame_source import FrameSource

    pipeline = BlobPipeline()
    source = FrameSource(blank_when_disconnected=True)
    result = pipeline.process(source.read_frame(), CameraSettings())
    assert result.targets == []
    print("✓ Pipeline processed a blank frame")


def main():
    """Run all checks"""
    print("Mini-Turret Installation Test")
    print("=" * 40)

    checks = [test_imports, test_turret_modules]
    passed = 0
    for check in checks:
        try:
            check()
            passed += 1
        except (ImportError, AssertionError) as e:
            print(f"✗ {check.__name__} failed: {e}")

    print("\n" + "=" * 40)
    print(f"Tests passed: {passed}/{len(checks)}")

    if passed == len(checks):
        print("✓ All tests passed! Mini-Turret is ready to use.")
        print("\nNext steps:")
        print("1. Create a demo video: python create_demo_video.py")
        print("2. Run: python main_turret.py --source demo.mp4")
        print("3. Or with a camera: python main_turret.py --camera 0")
        return 0

    print("✗ Some tests failed. Please check the installation.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
