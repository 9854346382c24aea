"""Configuration settings for the judge-panel image refinement loop."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


# Paths
PROJECT_ROOT = Path(__file__).parent
OUTPUTS_DIR = Path(os.getenv("JUDGELOOP_OUTPUTS_DIR", PROJECT_ROOT / "outputs"))

# Logging
LOG_LEVEL = os.getenv("JUDGELOOP_LOG_LEVEL", "INFO")

# API Keys (loaded from .env)
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")

# LLM Provider: "openai" or "anthropic"
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "openai")

# Agent model tiers -> model name per provider
MODEL_TIERS = {
    "openai": {
        "fast": "gpt-4o-mini",
        "standard": "gpt-4o",
        "pro": "gpt-4o",
    },
    "anthropic": {
        "fast": "claude-3-5-haiku-latest",
        "standard": "claude-sonnet-4-20250514",
        "pro": "claude-opus-4-20250514",
    },
}
DEFAULT_MODEL_TIER = "standard"

# Embeddings
EMBEDDING_MODEL = os.getenv("JUDGELOOP_EMBEDDING_MODEL", "text-embedding-3-small")

# Image generation (local SD3 client)
SD3_MODEL_ID = "stabilityai/stable-diffusion-3-medium-diffusers"
IMAGE_SIZE = 1024
NUM_INFERENCE_STEPS = 28
GUIDANCE_SCALE = 7.0
EDIT_STRENGTH = 0.6            # img2img strength when editing the previous best image

# Request defaults
DEFAULT_THRESHOLD = 75          # Stop once the aggregate score reaches this (0-100)
DEFAULT_MAX_ITERATIONS = 5
DEFAULT_IMAGES_PER_GENERATION = 1

# Diminishing returns: stop when the spread of the last N aggregate
# scores is below EPSILON points.
PLATEAU_WINDOW_SIZE = _env_int("JUDGELOOP_PLATEAU_WINDOW", 2)
PLATEAU_EPSILON = _env_float("JUDGELOOP_PLATEAU_EPSILON", 2.0)

# Retrieval defaults (used when an agent has no rag config)
RAG_TOP_K = 5
RAG_SIMILARITY_THRESHOLD = 0.7

# Reference document embedding
EMBEDDING_BATCH_SIZE = 10

# Fan-out and retries
JUDGE_TIMEOUT_SECONDS = _env_float("JUDGELOOP_JUDGE_TIMEOUT", 120.0)
JUDGE_MAX_WORKERS = _env_int("JUDGELOOP_JUDGE_WORKERS", 8)
GENERATION_MAX_ATTEMPTS = _env_int("JUDGELOOP_GENERATION_ATTEMPTS", 3)
GENERATION_RETRY_DELAY = _env_float("JUDGELOOP_GENERATION_RETRY_DELAY", 1.0)
ORCHESTRATION_TIMEOUT_SECONDS = _env_float("JUDGELOOP_ORCHESTRATION_TIMEOUT", 600.0)

# Per-iteration strategy in mixed mode: edit the previous best image to fix
# small issues, regenerate from a prompt for weak or fundamentally flawed ones.
EDIT_MIN_SCORE = 50
MAX_CONSECUTIVE_EDITS = 3
EDIT_DEGRADATION_WARNING = 5   # Forced edit mode warns from this many edits in a row
EDIT_PLATEAU_WINDOW = 3
EDIT_PLATEAU_SPREAD = 3.0
EDIT_PLATEAU_MIN_SCORE = 65
MAX_EDIT_ISSUES = 5

# Timed-out judge calls keep running; wait this long for their cost before a request ends
JUDGE_DRAIN_SECONDS = _env_float("JUDGELOOP_JUDGE_DRAIN", 30.0)

# Negative prompt accumulation from judge top issues
NEGATIVE_PROMPTS_PER_ITERATION = 3
MAX_NEGATIVE_PROMPT_LINES = 10

# Prompt optimizer (process-wide, loaded once)
OPTIMIZER_MODEL = os.getenv("JUDGELOOP_OPTIMIZER_MODEL", "gpt-4o")
OPTIMIZER_TEMPERATURE = _env_float("JUDGELOOP_OPTIMIZER_TEMPERATURE", 0.7)
OPTIMIZER_MAX_TOKENS = _env_int("JUDGELOOP_OPTIMIZER_MAX_TOKENS", 2000)

# Price table (USD). Bump PRICE_TABLE_VERSION when the rates change.
PRICE_TABLE_VERSION = os.getenv("JUDGELOOP_PRICE_TABLE_VERSION", "2025-01")
PRICE_PER_1K_LLM_TOKENS = _env_float("JUDGELOOP_PRICE_LLM_1K", 0.005)
PRICE_PER_IMAGE = _env_float("JUDGELOOP_PRICE_IMAGE", 0.04)
PRICE_PER_1K_EMBEDDING_TOKENS = _env_float("JUDGELOOP_PRICE_EMBEDDING_1K", 0.00002)

# Default negative prompt
DEFAULT_NEGATIVE_PROMPT = (
    "blurry, low quality, distorted, deformed, ugly, bad anatomy, "
    "bad proportions, extra limbs, cloned face, disfigured, "
    "out of frame, watermark, signature, text"
)
