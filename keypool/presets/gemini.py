from typing import Dict, List, Optional, Any
from ..core.types import PoolConfig
from .base import BasePreset, PresetOptions, Result

class GeminiPool(BasePreset):
    PROVIDER = 'gemini'

    # Gemini 2.0 Flash-Lite free tier
    LIMITS = {'perMinuteRequests': 30, 'perDayRequests': 200, 'perMinuteCost': 1_000_000}

    def __init__(self, keys: List[str], options: PresetOptions):
        super().__init__(keys, options)

    @staticmethod
    def _get_default_options() -> PresetOptions:
        return PresetOptions(
            env_keys=['GEMINI_API_KEY', 'GOOGLE_GEMINI_API_KEY'],
            provider=GeminiPool.PROVIDER,
            config=PoolConfig.from_env(**GeminiPool.LIMITS)
        )

    @classmethod
    def get_instance(cls, overrides: Optional[Dict[str, Any]] = None) -> Result:
        return cls.create_instance(cls, cls._get_default_options(), overrides)

    @classmethod
    def reset(cls):
        cls.reset_instance(cls.PROVIDER)
