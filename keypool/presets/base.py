import os
import json
import tempfile
from typing import Dict, List, Optional, TypeVar, Type, Callable, Any, Coroutine
from loguru import logger

from ..core.manager import KeyPool
from ..core.types import AcquireResult, ExecuteOptions, PoolConfig
from ..persistence.file import FileStore

T = TypeVar('T', bound='BasePreset')

class PresetOptions:
    def __init__(
        self,
        env_keys: List[str],
        provider: str = 'default',
        config: Optional[PoolConfig] = None,
        state_file_path: Optional[str] = None,
        persist: bool = True,
        store: Any = None
    ):
        self.env_keys = env_keys
        self.provider = provider
        self.config = config
        self.state_file_path = state_file_path
        self.persist = persist
        self.store = store

class Result:
    def __init__(self, success: bool, data: Optional[Any] = None, error: Optional[Exception] = None):
        self.success = success
        self.data = data
        self.error = error

class BasePreset:
    _instances: Dict[str, 'BasePreset'] = {}

    def __init__(self, api_keys: List[str], options: PresetOptions):
        self.options = options
        provider = options.provider

        store = options.store
        if store is None and options.persist:
            state_file = options.state_file_path
            if not state_file:
                state_file = os.path.join(tempfile.gettempdir(), f"keypool_{provider}_state.json")
            store = FileStore(file_path=state_file)

        self.pool = KeyPool(
            initial_keys=api_keys,
            store=store,
            config=options.config or PoolConfig.from_env()
        )

        self._wire_events()
        logger.info(f"[{provider}] KeyPool configured with {len(api_keys)} keys")

    def _wire_events(self):
        tag = self.options.provider
        self.pool.on('keyDeactivated', lambda k: logger.error(f"[{tag}] Key DEACTIVATED: ...{k[-4:]}"))
        self.pool.on('keyReactivated', lambda k: logger.info(f"[{tag}] Key REACTIVATED: ...{k[-4:]}"))
        self.pool.on('limitHit', lambda k, kind: logger.warning(f"[{tag}] {kind.value} limit hit: ...{k[-4:]}"))
        self.pool.on('proactiveRotation', lambda k, prev, score: logger.info(f"[{tag}] Rotated ...{prev[-4:]} -> ...{k[-4:]} (score {score:.2f})"))
        self.pool.on('retry', lambda k, attempt, delay: logger.info(f"[{tag}] Retry after ...{k[-4:]} (Attempt {attempt}, Delay {delay:.0f}ms)"))
        self.pool.on('fallbackMode', lambda: logger.warning(f"[{tag}] Running WITHOUT persistence (in-memory mode)"))
        self.pool.on('poolExhausted', lambda retry_after: logger.error(f"[{tag}] ALL KEYS EXHAUSTED! Retry after {retry_after}ms"))

    @classmethod
    def _parse_keys_from_env(cls, env_keys: List[str]) -> List[str]:
        keys = []
        for env_name in env_keys:
            keys.extend(cls._parse_value(os.environ.get(env_name, "")))
            # Numbered variants: NAME_1, NAME_2, ... up to the first gap.
            i = 1
            while True:
                val = os.environ.get(f"{env_name}_{i}", "").strip()
                if not val:
                    break
                keys.extend(cls._parse_value(val))
                i += 1
        return list(dict.fromkeys(keys)) # Deduplicate

    @staticmethod
    def _parse_value(val: str) -> List[str]:
        val = val.strip()
        if not val:
            return []
        if val.startswith('['):
            try:
                parsed = json.loads(val)
                if isinstance(parsed, list):
                    return [str(k).strip() for k in parsed if isinstance(k, str) and str(k).strip()]
            except json.JSONDecodeError:
                pass
        return [k.strip() for k in val.split(',') if k.strip()]

    @classmethod
    def create_instance(cls: Type[T], preset_class: Type[T], default_options: PresetOptions, overrides: Optional[Dict[str, Any]] = None) -> Result:
        overrides = overrides or {}
        provider = overrides.get('provider', default_options.provider)

        if provider in cls._instances:
            return Result(True, data=cls._instances[provider])

        env_keys = overrides.get('env_keys', default_options.env_keys)
        keys = cls._parse_keys_from_env(env_keys)

        if not keys:
            logger.warning(f"[{provider}] No API keys found in env vars: {', '.join(env_keys)}. AI features disabled.")

        opts = PresetOptions(
            env_keys=env_keys,
            provider=provider,
            config=overrides.get('config', default_options.config),
            state_file_path=overrides.get('state_file_path', default_options.state_file_path),
            persist=overrides.get('persist', default_options.persist),
            store=overrides.get('store', default_options.store)
        )

        try:
            instance = preset_class(keys, opts)
            cls._instances[provider] = instance
            return Result(True, data=instance)
        except Exception as e:
            return Result(False, error=e)

    @classmethod
    def reset_instance(cls, provider: str):
        instance = cls._instances.pop(provider, None)
        if instance is not None:
            instance.pool.close()

    @classmethod
    def reset_all(cls):
        for provider in list(cls._instances):
            cls.reset_instance(provider)

    async def execute(self, fn: Callable[[str], Coroutine[Any, Any, Any]], options: Optional[ExecuteOptions] = None, cost_fn: Optional[Callable[[Any], int]] = None) -> Any:
        return await self.pool.execute(fn, options, cost_fn=cost_fn)

    def acquire(self) -> AcquireResult:
        return self.pool.acquire_with_rotation()

    def get_key(self) -> str:
        return self.acquire().identifier
