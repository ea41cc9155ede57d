"""Parcel Tracker — Ranked Provider Chain.

Wraps the configured status providers behind the single StatusProvider
interface the core expects, with a per-provider timeout and circuit
breaker.

Flow for one code:
  1. Try each provider in rank order through its circuit breaker
  2. A timeout, an exception or an open circuit moves on to the next one;
     a provider reporting the code as unknown does too, without counting
     against its circuit breaker
  3. The first snapshot returned wins
  4. If every provider failed → FetchError (the engine retries next cycle)
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Sequence, Union

from src.config import ProvidersConfig
from src.providers.client import PageClient
from src.providers.spx_page import RenderedPageProvider, SpxPageProvider
from src.providers.tracking_api import TrackingApiProvider
from src.tracking.classifier import StatusClassifier
from src.tracking.errors import FetchError
from src.tracking.models import StatusSnapshot
from src.tracking.ports import StatusProvider
from src.utils.logger import get_logger
from src.utils.resilience import CircuitBreaker, CircuitOpenError

logger = get_logger(__name__)


class ProviderChain:
    """Ordered fallback across status providers.

    Attributes:
        providers: Providers in rank order (first = primary).
        timeout_seconds: Upper bound for a single provider call.
        name: Always 'chain'; used when every provider failed.
    """

    name = "chain"

    def __init__(
        self,
        providers: Sequence[StatusProvider],
        timeout_seconds: float = 15.0,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
    ) -> None:
        if not providers:
            raise ValueError("ProviderChain needs at least one provider")
        self.providers = list(providers)
        self.timeout_seconds = timeout_seconds
        self._breakers = [
            CircuitBreaker(
                name=provider.name,
                failure_threshold=failure_threshold,
                cooldown_seconds=cooldown_seconds,
            )
            for provider in self.providers
        ]

        logger.info(
            "ProviderChain initialized: %s (timeout %.0fs per provider)",
            " → ".join(p.name for p in self.providers), timeout_seconds,
        )

    @property
    def circuit_breakers(self) -> list[CircuitBreaker]:
        """Breakers in provider rank order."""
        return list(self._breakers)

    async def _call_with_timeout(
        self,
        provider: StatusProvider,
        code: str,
    ) -> Union[StatusSnapshot, FetchError]:
        """Call one provider, returning an upstream miss instead of raising it.

        The breaker only sees exceptions, so a provider that answered
        "unknown code" is recorded as healthy.
        """
        try:
            return await asyncio.wait_for(provider.fetch(code), timeout=self.timeout_seconds)
        except FetchError as e:
            if e.upstream_miss:
                return e
            raise

    async def fetch(self, code: str) -> StatusSnapshot:
        """Return the first successful snapshot.

        Raises:
            FetchError: If every provider failed or was skipped. Flagged as
                an upstream miss when every provider that answered reported
                the code as unknown.
        """
        failures: list[str] = []
        misses = 0

        for rank, (provider, breaker) in enumerate(zip(self.providers, self._breakers)):
            try:
                outcome = await breaker.call(self._call_with_timeout, provider, code)
            except CircuitOpenError as e:
                logger.debug("%s skipped for %s: %s", provider.name, code, e)
                failures.append(f"{provider.name}: circuit open")
                continue
            except asyncio.TimeoutError:
                logger.warning(
                    "%s timed out after %.0fs for %s", provider.name, self.timeout_seconds, code,
                )
                failures.append(f"{provider.name}: timeout")
                continue
            except FetchError as e:
                logger.warning("%s failed for %s: %s", provider.name, code, e.reason)
                failures.append(f"{provider.name}: {e.reason}")
                continue
            except Exception as e:
                logger.error(
                    "%s raised unexpected %s for %s: %s",
                    provider.name, type(e).__name__, code, str(e)[:200],
                )
                failures.append(f"{provider.name}: {type(e).__name__}")
                continue

            if isinstance(outcome, FetchError):
                logger.info("%s has nothing for %s: %s", provider.name, code, outcome.reason)
                failures.append(f"{provider.name}: {outcome.reason}")
                misses += 1
                continue

            if rank > 0:
                logger.info("Status for %s obtained via fallback %s", code, provider.name)
            return outcome

        raise FetchError(
            self.name, code,
            "all providers failed (" + "; ".join(failures) + ")",
            upstream_miss=misses == len(failures),
        )

    def health(self) -> list[dict[str, Any]]:
        """Serialized breaker state per provider, for the health endpoint."""
        return [breaker.to_dict() for breaker in self._breakers]

    async def close(self) -> None:
        """Close every provider that holds a connection."""
        for provider in self.providers:
            close = getattr(provider, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning("Error closing provider %s: %s", provider.name, e)


def build_provider_chain(
    config: ProvidersConfig,
    classifier: Optional[StatusClassifier] = None,
) -> ProviderChain:
    """Instantiate the providers named in `config.order`, in that order.

    The rendered-page provider is left out when no render service URL is
    configured.
    """
    classifier = classifier or StatusClassifier()
    providers: list[StatusProvider] = []

    for name in config.order:
        if name == "tracking_api":
            providers.append(TrackingApiProvider(
                base_url=config.tracking_api_url,
                user_agent=config.user_agent,
                timeout_seconds=config.timeout_seconds,
                classifier=classifier,
            ))
        elif name == "spx_page":
            providers.append(SpxPageProvider(
                page_url=config.spx_page_url,
                client=PageClient(
                    name=name,
                    user_agent=config.user_agent,
                    timeout_seconds=config.timeout_seconds,
                    min_interval_seconds=config.spx_min_interval_seconds,
                ),
                classifier=classifier,
            ))
        elif name == "rendered_page":
            if not config.render_url:
                logger.info("rendered_page provider disabled (no render service URL)")
                continue
            providers.append(RenderedPageProvider(
                render_url=config.render_url,
                page_url=config.spx_page_url,
                client=PageClient(
                    name=name,
                    user_agent=config.user_agent,
                    timeout_seconds=config.timeout_seconds,
                ),
                classifier=classifier,
            ))

    return ProviderChain(
        providers,
        timeout_seconds=config.timeout_seconds,
        failure_threshold=config.failure_threshold,
        cooldown_seconds=config.cooldown_seconds,
    )
