from typing import Dict, Type

from mediagrab.processing import errors
from mediagrab.resolvers.base import BaseResolver, ResolverError
from mediagrab.resolvers.direct import DirectResolver


class ResolverFactory:
    """Factory for creating metadata resolvers."""

    _resolvers: Dict[str, Type[BaseResolver]] = {
        DirectResolver.name: DirectResolver,
    }

    @classmethod
    def get_resolver(cls, service: str, **kwargs) -> BaseResolver:
        """Get the resolver instance for ``service``."""
        resolver_class = cls._resolvers.get(service)
        if not resolver_class:
            raise ResolverError(errors.SERVICE_UNSUPPORTED, f"No resolver for service: {service}")
        return resolver_class(**kwargs)
