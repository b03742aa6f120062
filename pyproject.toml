[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "objslam"
version = "0.1.0"
description = "Object-aware ORB feature matching and RANSAC EPnP pose estimation for visual SLAM"
requires-python = ">=3.10"
dependencies = ["numpy"]
keywords = ["slam", "epnp", "pnp", "ransac", "orb", "feature-matching", "computer-vision"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Image Recognition",
]

[project.optional-dependencies]
test = ["pytest", "hypothesis"]

[tool.hatch.build.targets.wheel]
packages = ["objslam"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
