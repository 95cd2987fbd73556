from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ModelChoice:
    key: str
    display_name: str
    repo_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "display_name": self.display_name, "repo_id": self.repo_id}


@dataclass(frozen=True)
class StylePreset:
    key: str
    display_name: str
    prompt_suffix: str

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "display_name": self.display_name, "prompt_suffix": self.prompt_suffix}


MODEL_CHOICES: Dict[str, ModelChoice] = {
    "stable-diffusion-3.5-large": ModelChoice(
        key="stable-diffusion-3.5-large",
        display_name="Stable Diffusion 3.5 Large",
        repo_id="stabilityai/stable-diffusion-3.5-large",
    ),
    "stable-diffusion-xl": ModelChoice(
        key="stable-diffusion-xl",
        display_name="Stable Diffusion XL",
        repo_id="stabilityai/stable-diffusion-xl-base-1.0",
    ),
    "sdxl-turbo": ModelChoice(
        key="sdxl-turbo",
        display_name="SDXL Turbo",
        repo_id="stabilityai/sdxl-turbo",
    ),
    "flux-schnell": ModelChoice(
        key="flux-schnell",
        display_name="FLUX.1 Schnell",
        repo_id="black-forest-labs/FLUX.1-schnell",
    ),
}

STYLE_PRESETS: Dict[str, StylePreset] = {
    "photorealistic": StylePreset(
        key="photorealistic",
        display_name="Photorealistic",
        prompt_suffix="photorealistic, highly detailed, natural lighting, 8k photograph",
    ),
    "anime": StylePreset(
        key="anime",
        display_name="Anime",
        prompt_suffix="anime style, cel shading, vibrant colors, clean line art",
    ),
    "digital-art": StylePreset(
        key="digital-art",
        display_name="Digital Art",
        prompt_suffix="digital art, concept art, trending on artstation, sharp focus",
    ),
    "oil-painting": StylePreset(
        key="oil-painting",
        display_name="Oil Painting",
        prompt_suffix="oil painting, visible brush strokes, canvas texture, classical composition",
    ),
    "3d-render": StylePreset(
        key="3d-render",
        display_name="3D Render",
        prompt_suffix="3d render, octane render, global illumination, subsurface scattering",
    ),
    "pixel-art": StylePreset(
        key="pixel-art",
        display_name="Pixel Art",
        prompt_suffix="pixel art, 16-bit, limited palette, crisp pixels",
    ),
}

# Slider ranges shown by the settings panel: (min, max, step).
PARAMETER_RANGES: Dict[str, tuple[float, float, float]] = {
    "width": (256, 1024, 64),
    "height": (256, 1024, 64),
    "steps": (10, 50, 1),
    "guidance": (1, 20, 0.5),
    "seed": (0, 1_000_000, 1),
}

RANDOM_SEED = -1

VIDEO_RATIOS = {
    "landscape": "1280:768",
    "portrait": "768:1280",
}


def resolve_model_repo(model_key: Optional[str], fallback_repo: str) -> str:
    """Map a panel model key to a hosted repo id; unknown keys are taken as repo ids."""
    key = str(model_key or "").strip()
    if not key:
        return fallback_repo
    choice = MODEL_CHOICES.get(key)
    if choice is not None:
        return choice.repo_id
    return key if "/" in key else fallback_repo


def compose_prompt(prompt: str, style_key: Optional[str], enhance_prompt: bool) -> str:
    base = prompt.strip()
    if not enhance_prompt:
        return base
    preset = STYLE_PRESETS.get(str(style_key or ""))
    if preset is None or not preset.prompt_suffix:
        return base
    return f"{base}, {preset.prompt_suffix}"


def build_text_to_image_payload(prompt: str, settings: Dict[str, Any]) -> Dict[str, Any]:
    """Build the inference payload from the prompt and the panel settings."""
    parameters: Dict[str, Any] = {
        "width": int(settings["width"]),
        "height": int(settings["height"]),
        "num_inference_steps": int(settings["steps"]),
        "guidance_scale": float(settings["guidance"]),
    }
    seed = settings.get("seed")
    if seed is not None and int(seed) != RANDOM_SEED:
        parameters["seed"] = int(seed)
    return {
        "inputs": compose_prompt(prompt, settings.get("style"), bool(settings.get("enhance_prompt"))),
        "parameters": parameters,
    }


def video_ratio(orientation: str) -> str:
    return VIDEO_RATIOS.get(str(orientation or "").strip().lower(), VIDEO_RATIOS["landscape"])


def presets_payload(defaults: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "models": [choice.to_dict() for choice in MODEL_CHOICES.values()],
        "styles": [preset.to_dict() for preset in STYLE_PRESETS.values()],
        "ranges": {
            name: {"min": low, "max": high, "step": step} for name, (low, high, step) in PARAMETER_RANGES.items()
        },
        "video": {"durations": [5, 10], "orientations": list(VIDEO_RATIOS.keys())},
        "defaults": dict(defaults),
    }
