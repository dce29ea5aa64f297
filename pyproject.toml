[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "encoderkit"
version = "0.1.0"
description = "Pure NumPy inference for BERT-family encoder models: embeddings, pooling, SPLADE and classification."
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["embeddings", "bert", "distilbert", "roberta", "splade", "alibi", "safetensors", "numpy"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["encoderkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
