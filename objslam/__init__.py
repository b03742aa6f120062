"""Object-aware ORB feature matching and RANSAC EPnP pose estimation for visual SLAM."""

__version__ = "0.1.0"
__all__ = ["epnp", "pnp", "objects", "matching", "bow", "projection"]