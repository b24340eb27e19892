"""Vaporstudio -- FastAPI REST API layer.

Modules
-------
main
    FastAPI application factory, route handlers and the ``main()`` CLI
    entry point.
models
    Pydantic response models.
validation
    Form field validation into composition configurations.
responses
    PNG and JSON error responses.
assets
    Background and overlay listing.
"""
