"""AI completion interface and its Vertex AI (Gemini) implementation."""
from __future__ import annotations
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Optional, Protocol

from core.config import config as cfg
from core.errors import AICallFailure
from core.logger import get_logger

log = get_logger("llm/client")


class CompletionClient(Protocol):
    """Anything that turns one text prompt into one text completion."""

    def complete(self, prompt: str) -> str:
        """
        Return the completion text.

        Raises:
            AICallFailure: On transport, quota, timeout or empty responses
        """
        ...


def _init_vertex(project_id: Optional[str], location: str) -> None:
    """Initialize Vertex AI once per process."""
    if not hasattr(_init_vertex, "_initialized"):
        from google.cloud import aiplatform

        log.info(f"Initializing Vertex AI: project={project_id}, location={location}")
        aiplatform.init(project=project_id, location=location)
        _init_vertex._initialized = True


class VertexCompletionClient:
    """
    Gemini on Vertex AI behind the ``CompletionClient`` interface.

    Every call is bounded by ``timeout_seconds``; a call that outlives it is
    abandoned and reported as an ``AICallFailure`` so a hung request never
    blocks the caller. ``retries`` defaults to 0: recovery belongs to the
    pipeline.
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        *,
        project_id: Optional[str] = None,
        location: Optional[str] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        retries: Optional[int] = None,
    ):
        self.model_name = model_name or cfg.vertex_model
        self.project_id = project_id or cfg.gcp_project_id
        self.location = location or cfg.gcp_location
        self.temperature = cfg.ai_temperature if temperature is None else temperature
        self.max_output_tokens = max_output_tokens or cfg.ai_max_output_tokens
        self.timeout_seconds = timeout_seconds or cfg.ai_timeout_seconds
        self.retries = cfg.ai_max_retries if retries is None else retries
        self._model = None
        # Calls run here so the timeout can be enforced around the SDK call
        self._executor = ThreadPoolExecutor(max_workers=cfg.ai_max_workers, thread_name_prefix="vertex")

    def _get_model(self):
        if self._model is None:
            from vertexai.generative_models import GenerativeModel

            try:
                _init_vertex(self.project_id, self.location)
                self._model = GenerativeModel(self.model_name)
                log.info(f"Vertex AI model ready: model={self.model_name}")
            except Exception as e:
                log.error(
                    f"Failed to initialize Vertex AI: project={self.project_id} location={self.location} "
                    f"model={self.model_name} error={type(e).__name__}: {e}"
                )
                raise AICallFailure(f"Vertex AI initialization failed: {e}", cause=e) from e
        return self._model

    def _generate(self, prompt: str) -> str:
        from vertexai.generative_models import GenerationConfig

        response = self._get_model().generate_content(
            prompt,
            generation_config=GenerationConfig(
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
            ),
        )
        return (response.text or "").strip()

    def complete(self, prompt: str) -> str:
        last_err: Optional[BaseException] = None
        start_time = time.time()

        for attempt in range(self.retries + 1):
            attempt_start = time.time()
            try:
                future = self._executor.submit(self._generate, prompt)
                text = future.result(timeout=self.timeout_seconds)
                if not text:
                    raise AICallFailure("No response from AI API")

                log.info(
                    f"LLM generation successful: attempt={attempt + 1} prompt_length={len(prompt)} "
                    f"response_length={len(text)} elapsed={time.time() - attempt_start:.2f}s"
                )
                log.debug(f"LLM response preview: {text[:200]}...")
                return text

            except FutureTimeoutError as e:
                future.cancel()
                last_err = e
                log.warning(
                    f"LLM generation timed out (attempt {attempt + 1}/{self.retries + 1}): "
                    f"timeout={self.timeout_seconds}s"
                )
            except Exception as e:
                last_err = e
                log.warning(
                    f"LLM generation failed (attempt {attempt + 1}/{self.retries + 1}): "
                    f"error={type(e).__name__}: {e} elapsed={time.time() - attempt_start:.2f}s"
                )

            # Don't sleep after the last attempt
            if attempt < self.retries:
                time.sleep(2 ** attempt)

        total_elapsed = time.time() - start_time
        if isinstance(last_err, FutureTimeoutError):
            error_msg = f"Vertex AI call timed out after {self.timeout_seconds}s"
        else:
            error_msg = f"Vertex AI generation failed after {self.retries + 1} attempts: {last_err!r}"
        log.error(f"{error_msg} total_elapsed={total_elapsed:.2f}s")
        if isinstance(last_err, AICallFailure):
            raise last_err
        raise AICallFailure(error_msg, cause=last_err)
