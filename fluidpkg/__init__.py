"""fluidpkg - package manager for per-project (fluid) package roots."""

__version__ = "1.0.0"
