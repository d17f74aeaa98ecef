"""Orchestration services: models, queue preparation, unit lifecycle, session control."""
