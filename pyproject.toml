[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "slamkit"
version = "0.1.0"
description = "Visual SLAM building blocks: Lie groups, curve fitting, RGB-D and dense mapping, pose graphs and a stereo odometry core"
requires-python = ">=3.10"
keywords = [
    "slam",
    "visual-odometry",
    "lie-group",
    "se3",
    "pose-graph",
    "point-cloud",
    "triangulation",
    "bundle-adjustment",
    "computer-vision",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Processing",
    "Topic :: Scientific/Engineering :: Mathematics",
]
dependencies = [
    "numpy",
    "scipy",
    "pyyaml",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
slamkit-curve-fitting = "slamkit.curve_fitting:main"
slamkit-trajectory = "slamkit.trajectory:main"
slamkit-dense-mapping = "slamkit.dense_mapping:main"
slamkit-pose-graph = "slamkit.pose_graph:main"

[tool.hatch.build.targets.wheel]
packages = ["slamkit"]

[tool.hatch.build.targets.sdist]
include = ["slamkit", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
