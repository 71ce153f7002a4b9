"""
DeepLab background removal package.

Exposes reusable primitives for loading the segmentation model,
preprocessing images, building masks, compositing outputs, and serving the
FastAPI application.
"""
