"""Image generation clients. The default is a local SD3 model via Diffusers."""

import logging
import random
from pathlib import Path
from typing import Optional, Protocol

import config

from .errors import GenerationError
from .schemas import GeneratedImage, ImageParams

logger = logging.getLogger(__name__)


class ImageClient(Protocol):
    def generate(
        self,
        prompt: str,
        params: ImageParams,
        negative_prompt: Optional[str] = None,
        source_image: Optional[GeneratedImage] = None,
    ) -> list[GeneratedImage]:
        """Render candidates for ``prompt``.

        With ``source_image`` the prompt is an edit instruction applied to that
        image instead of a description rendered from scratch.
        """
        ...


def dimensions_for(aspect_ratio: Optional[str], base: int = config.IMAGE_SIZE) -> tuple[int, int]:
    """Width and height for an aspect ratio like "16:9", rounded to multiples of 64.

    The long side is ``base``; an unset or malformed ratio gives a square.
    """
    try:
        w_ratio, h_ratio = (float(part) for part in (aspect_ratio or "1:1").split(":"))
    except ValueError:
        return base, base
    if w_ratio <= 0 or h_ratio <= 0:
        return base, base
    if w_ratio >= h_ratio:
        width, height = base, base * h_ratio / w_ratio
    else:
        width, height = base * w_ratio / h_ratio, base
    return max(64, int(round(width / 64)) * 64), max(64, int(round(height / 64)) * 64)


class DiffusersImageClient:
    """Generates images using Stable Diffusion 3.

    torch and diffusers are imported on first use so the rest of the package
    works without them (install the ``sd3`` extra). Edits reuse the loaded
    weights through an image-to-image pipeline.
    """

    def __init__(
        self,
        model_id: str = config.SD3_MODEL_ID,
        device: str = "cuda",
        output_dir: Path | None = None,
        num_inference_steps: int = config.NUM_INFERENCE_STEPS,
        guidance_scale: float = config.GUIDANCE_SCALE,
        edit_strength: float = config.EDIT_STRENGTH,
    ):
        self.model_id = model_id
        self.device = device
        self.output_dir = Path(output_dir or config.OUTPUTS_DIR) / "images"
        self.num_inference_steps = num_inference_steps
        self.guidance_scale = guidance_scale
        self.edit_strength = edit_strength
        self._pipeline = None
        self._edit_pipeline = None

    @property
    def pipeline(self):
        """Lazy-load the pipeline on first use."""
        if self._pipeline is None:
            import torch
            from diffusers import StableDiffusion3Pipeline

            logger.info(f"[SD3_LOAD] Model: {self.model_id} | Device: {self.device}")
            self._pipeline = StableDiffusion3Pipeline.from_pretrained(
                self.model_id,
                torch_dtype=torch.float16,
            )
            self._pipeline.to(self.device)
            # Enable memory optimizations
            self._pipeline.enable_attention_slicing()
        return self._pipeline

    @property
    def edit_pipeline(self):
        """Image-to-image pipeline sharing the text-to-image components."""
        if self._edit_pipeline is None:
            from diffusers import AutoPipelineForImage2Image

            self._edit_pipeline = AutoPipelineForImage2Image.from_pipe(self.pipeline)
        return self._edit_pipeline

    def generate(
        self,
        prompt: str,
        params: ImageParams,
        negative_prompt: Optional[str] = None,
        source_image: Optional[GeneratedImage] = None,
    ) -> list[GeneratedImage]:
        """Generate ``params.images_per_generation`` candidates and save them as PNGs.

        Args:
            prompt: Image description, or an edit instruction when editing.
            params: Candidate count and aspect ratio.
            negative_prompt: Things to avoid; the config default if None.
            source_image: Image to edit instead of generating from scratch.

        Returns:
            The saved candidates.

        Raises:
            GenerationError: the pipeline failed to produce images.
        """
        import torch

        seed = random.randint(0, 2**32 - 1)
        kwargs = dict(
            prompt=prompt,
            negative_prompt=negative_prompt or config.DEFAULT_NEGATIVE_PROMPT,
            num_inference_steps=self.num_inference_steps,
            guidance_scale=self.guidance_scale,
            num_images_per_prompt=params.images_per_generation,
            generator=torch.Generator(device=self.device).manual_seed(seed),
        )
        try:
            if source_image is not None:
                from diffusers.utils import load_image

                result = self.edit_pipeline(
                    image=load_image(source_image.url),
                    strength=self.edit_strength,
                    **kwargs,
                )
            else:
                width, height = dimensions_for(params.aspect_ratio)
                result = self.pipeline(width=width, height=height, **kwargs)
        except Exception as exc:
            mode = "edit" if source_image is not None else "generation"
            raise GenerationError(f"SD3 {mode} failed: {exc}") from exc

        self.output_dir.mkdir(parents=True, exist_ok=True)
        images = []
        for pil_image in result.images:
            image = GeneratedImage(url="", width=pil_image.width, height=pil_image.height, prompt_used=prompt)
            path = self.output_dir / f"{image.id}.png"
            pil_image.save(path)
            image.url = str(path)
            image.size_bytes = path.stat().st_size
            images.append(image)

        logger.debug(
            f"[SD3_GENERATED] Images: {len(images)} | Seed: {seed} | "
            f"Source: {source_image.id if source_image else None}"
        )
        self.clear_cache()
        return images

    def clear_cache(self) -> None:
        """Clear CUDA cache to free memory."""
        import torch

        if torch.cuda.is_available():
            torch.cuda.empty_cache()
