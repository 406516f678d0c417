"""
Service registry and configuration handed to job instances.

Optional collaborators (AI agent, search, downloader, extractor, embedder)
are registered under typed keys before the processor starts and only read
afterwards. Jobs ask for them with get_optional() and take their fallback
path when nothing is registered.
"""

from typing import Any, Dict, Generic, List, Mapping, Optional, Protocol, TypeVar, Union

from werkzeug.utils import import_string

from .errors import ConfigError, ServiceUnavailableError

T = TypeVar('T')


class ServiceKey(Generic[T]):
    """Typed lookup token. Two keys are equal when their names are."""

    def __init__(self, name: str, kind: Optional[type] = None):
        self.name = name
        self.kind = kind

    def __eq__(self, other):
        if isinstance(other, ServiceKey):
            return self.name == other.name
        return NotImplemented

    def __hash__(self):
        return hash(self.name)

    def __repr__(self):
        return f"ServiceKey({self.name!r})"


class CollectionAgent(Protocol):
    def create_plan(self, query: str, options: Dict[str, Any]) -> Dict[str, Any]: ...

    def execute(self, plan: Dict[str, Any], on_progress) -> Dict[str, Any]: ...

    def summarize(self, query: str, collection: Dict[str, Any]) -> str: ...


class SearchProvider(Protocol):
    def search(self, query: str, limit: int, options: Dict[str, Any]) -> List[Dict[str, Any]]: ...


class Downloader(Protocol):
    def download(self, url: str) -> Dict[str, Any]: ...


class FileProcessor(Protocol):
    def extract(self, document: Dict[str, Any], chunk_size: int, chunk_overlap: int) -> List[str]: ...


class Embedder(Protocol):
    def embed(self, chunks: List[str]) -> List[List[float]]: ...


COLLECTION_AGENT: ServiceKey[CollectionAgent] = ServiceKey('collection_agent', CollectionAgent)
SEARCH_PROVIDER: ServiceKey[SearchProvider] = ServiceKey('search_provider', SearchProvider)
DOWNLOADER: ServiceKey[Downloader] = ServiceKey('downloader', Downloader)
FILE_PROCESSOR: ServiceKey[FileProcessor] = ServiceKey('file_processor', FileProcessor)
EMBEDDER: ServiceKey[Embedder] = ServiceKey('embedder', Embedder)

WELL_KNOWN_KEYS = {key.name: key for key in (COLLECTION_AGENT, SEARCH_PROVIDER, DOWNLOADER, FILE_PROCESSOR, EMBEDDER)}


def _as_key(key_or_name) -> ServiceKey:
    if isinstance(key_or_name, ServiceKey):
        return key_or_name
    return WELL_KNOWN_KEYS.get(key_or_name) or ServiceKey(key_or_name)


class ServiceRegistry:

    def __init__(self):
        self._services: Dict[ServiceKey, Any] = {}

    def register(self, key: Union[ServiceKey, str], instance) -> None:
        self._services[_as_key(key)] = instance

    def get(self, key: Union[ServiceKey[T], str]) -> T:
        key = _as_key(key)
        try:
            return self._services[key]
        except KeyError:
            raise ServiceUnavailableError(key.name) from None

    def get_optional(self, key: Union[ServiceKey[T], str]) -> Optional[T]:
        return self._services.get(_as_key(key))

    def has(self, key) -> bool:
        return _as_key(key) in self._services

    def names(self) -> List[str]:
        return sorted(key.name for key in self._services)


_MISSING = object()
_TRUTHY = {'1', 'true', 'yes', 'on'}


class Config:
    """Read-only view over app.config for job code."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values = dict(values or {})

    def get(self, key):
        value = self._values.get(key, _MISSING)
        if value is _MISSING:
            raise ConfigError(key)
        return value

    def get_optional(self, key, default=None):
        return self._values.get(key, default)

    def get_int(self, key, default=None):
        value = self._values.get(key)
        if value is None or value == '':
            return default
        return int(value)

    def get_bool(self, key, default=False):
        value = self._values.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUTHY

    def __contains__(self, key):
        return key in self._values


def load_providers(registry: ServiceRegistry, spec_string: Optional[str], logger=None) -> List[str]:
    """
    Register collaborators named in a SERVICE_PROVIDERS string such as
    "search_provider=myapp.search:build, embedder=myapp.embed:Embedder".
    Each target is called with no arguments and the result registered.
    """
    loaded = []
    for entry in (spec_string or '').split(','):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, target = entry.partition('=')
        if not sep or not name.strip() or not target.strip():
            raise ValueError(f"Invalid service provider entry: {entry!r}")
        factory = import_string(target.strip())
        registry.register(name.strip(), factory())
        loaded.append(name.strip())
        if logger is not None:
            logger.info("Service provider registered", service=name.strip(), target=target.strip())
    return loaded
