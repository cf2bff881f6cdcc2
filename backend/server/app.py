"""
FastAPI app factory.

Responsibilities:
- Create and configure FastAPI app
- Set up middleware
- Initialize shared resources (OpenAI client, provider factory)
- Register routes
"""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from openai import AsyncOpenAI

from adapters.asr.base import TranscriptionProvider
from adapters.asr.deepgram_streaming import DeepgramProvider
from adapters.asr.openai_batch import OpenAIBatchProvider
from config import AppConfig
from observability.logger import log_event, set_log_level
from session.gateway import ProviderFactory

from server.routes import register_routes


def create_app(config: AppConfig | None = None) -> FastAPI:
    """
    Build the transcription app.

    Tests pass an AppConfig built from a literal env mapping; asgi.py
    passes nothing and the process environment is read.
    """
    config = config or AppConfig.load_from_env()
    set_log_level(config.log_level)

    app = FastAPI(title="Transcription API")

    app.state.config = config

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten later
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.provider_factory = build_provider_factory(config)

    log_event({
        "event_type": "APP_CREATED",
        "env": config.env,
        "asr_provider": config.asr_provider,
        "transport": config.transport.value,
    })

    # Routes
    register_routes(app)

    return app


def build_provider_factory(config: AppConfig) -> ProviderFactory:
    """
    Build the per-session provider factory selected by ASR_PROVIDER.

    The OpenAI client is created ONCE per process and shared by sessions.
    """
    if config.asr_provider == "deepgram":
        api_key = config.deepgram_api_key
        if not api_key:
            raise RuntimeError("DEEPGRAM_API_KEY environment variable not set")

        def deepgram_factory() -> TranscriptionProvider:
            return DeepgramProvider(
                api_key=api_key,
                model=config.deepgram_model,
                language=config.language,
                sample_rate=config.ingest_sample_rate_hz,
                channels=config.ingest_channels,
            )

        return deepgram_factory

    if config.asr_provider == "openai":
        if not config.openai_api_key:
            raise RuntimeError("OPENAI_API_KEY environment variable not set")
        client = AsyncOpenAI(api_key=config.openai_api_key)

        def openai_factory() -> TranscriptionProvider:
            return OpenAIBatchProvider(
                client=client,
                model=config.openai_transcribe_model,
                language=config.language,
            )

        return openai_factory

    raise RuntimeError(f"Unknown ASR_PROVIDER: {config.asr_provider!r}")
