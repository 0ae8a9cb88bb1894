import yaml
from pathlib import Path
from .models import AppConfig
from .presets import get_preset, list_presets

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # A named default preset seeds `defaults`; explicit keys win.
    preset_id = data.get("default_preset")
    if preset_id:
        if preset_id not in list_presets():
            raise ValueError(f"Unknown default_preset '{preset_id}'")
        base = get_preset(preset_id).model_dump()
        base.update(data.get("defaults") or {})
        data["defaults"] = base

    return AppConfig(**data)
