from __future__ import annotations

import importlib
import logging
from typing import Any

from destinyrag.core.config import Settings, get_settings
from destinyrag.core.errors import LLMResponseError, ProviderConfigError

logger = logging.getLogger(__name__)

_AUTH_HINT = "Vertex auth error: run `gcloud auth application-default login`."


def _vertex_module(name: str) -> Any:
    # The SDK is imported on first use so the API can boot with the fake provider.
    try:
        return importlib.import_module(name)
    except ImportError as exc:
        raise ProviderConfigError(
            "Vertex AI SDK not available. Install google-cloud-aiplatform."
        ) from exc


def _auth_errors() -> tuple[type[BaseException], ...]:
    auth = _vertex_module("google.auth.exceptions")
    api_core = _vertex_module("google.api_core.exceptions")
    return (
        auth.DefaultCredentialsError,
        auth.RefreshError,
        api_core.PermissionDenied,
        api_core.Unauthenticated,
    )


class GeminiVertexProvider:
    """Gemini text generation and text embeddings on Vertex AI."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self.text_model = self._settings.gemini_text_model
        self.embedding_model = self._settings.gemini_embedding_model
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        missing = [
            env_name
            for env_name, value in (
                ("GOOGLE_CLOUD_PROJECT", self._settings.google_cloud_project),
                ("GOOGLE_CLOUD_LOCATION", self._settings.google_cloud_location),
                ("GEMINI_TEXT_MODEL", self.text_model),
            )
            if not value
        ]
        if missing:
            # Surface config gaps before the SDK turns them into opaque auth failures.
            raise ProviderConfigError(f"Vertex config missing: set {', '.join(missing)} in .env.")
        _vertex_module("vertexai").init(
            project=self._settings.google_cloud_project,
            location=self._settings.google_cloud_location,
        )
        self._initialized = True
        logger.info(
            "vertex_initialized project=%s location=%s",
            self._settings.google_cloud_project,
            self._settings.google_cloud_location,
        )

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        generation_config: dict[str, Any] | None = None,
    ) -> str:
        self._ensure_initialized()
        sdk = _vertex_module("vertexai.generative_models")
        model = sdk.GenerativeModel(self.text_model, system_instruction=system_prompt or None)
        config = sdk.GenerationConfig(**generation_config) if generation_config else None
        logger.info("vertex_generate_start model=%s prompt_chars=%s", self.text_model, len(prompt))
        try:
            response = await model.generate_content_async(prompt, generation_config=config)
        except _auth_errors() as exc:
            logger.warning("vertex_generate_auth_error model=%s", self.text_model)
            raise ProviderConfigError(_AUTH_HINT) from exc
        try:
            return response.text
        except ValueError as exc:
            # Blocked or empty candidates surface as ValueError on `.text`.
            raise LLMResponseError(f"Vertex returned no text for model {self.text_model}.") from exc

    async def embed(self, text: str) -> list[float]:
        self._ensure_initialized()
        sdk = _vertex_module("vertexai.language_models")
        model = sdk.TextEmbeddingModel.from_pretrained(self.embedding_model)
        try:
            embeddings = await model.get_embeddings_async([text])
        except _auth_errors() as exc:
            logger.warning("vertex_embed_auth_error model=%s", self.embedding_model)
            raise ProviderConfigError(_AUTH_HINT) from exc
        if not embeddings:
            raise LLMResponseError(f"Vertex returned no embedding for model {self.embedding_model}.")
        return [float(value) for value in embeddings[0].values]
