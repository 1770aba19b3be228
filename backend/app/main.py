from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict
from typing import Any, Protocol

from fastapi import Depends, FastAPI, HTTPException

from . import schemas
from .db import SessionFactory, session_scope
from .repositories import MarketRepository


class StatusSource(Protocol):
    """Anything exposing a health snapshot, typically a PeriodicService."""

    name: str

    def state(self) -> Any:
        ...


def create_app(
    services: Sequence[StatusSource] = (),
    *,
    session_factory: SessionFactory | None = None,
    debug: bool = False,
) -> FastAPI:
    app = FastAPI(title="Market Orchestrator", version="0.1.0", debug=debug)

    def _session_factory() -> SessionFactory:
        if session_factory is None:
            raise HTTPException(status_code=503, detail="Store not configured")
        return session_factory

    @app.get("/healthz", tags=["system"])
    def healthcheck() -> dict[str, str]:
        """Basic liveness probe consumed by infrastructure monitors."""

        return {"status": "ok"}

    @app.get("/status", response_model=schemas.StatusResponse, tags=["system"])
    def status() -> schemas.StatusResponse:
        """Report each periodic service's run state and error counters."""

        snapshots = [schemas.ServiceStatus(**asdict(service.state())) for service in services]
        degraded = any(snapshot.last_error for snapshot in snapshots)
        return schemas.StatusResponse(status="degraded" if degraded else "ok", services=snapshots)

    @app.get("/markets/{market_id}", response_model=schemas.MarketMirror, tags=["markets"])
    def get_market(market_id: str, factory: SessionFactory = Depends(_session_factory)):
        """Return the mirrored state of a market with its signed transition history."""

        with session_scope(factory) as session:
            mirror = MarketRepository(session).get(market_id)
            if mirror is None:
                raise HTTPException(status_code=404, detail="Market not found")
            return schemas.MarketMirror.model_validate(mirror)

    @app.get("/invariants", response_model=schemas.InvariantReport, tags=["system"])
    def invariants(factory: SessionFactory = Depends(_session_factory)):
        """Check that every mirror field is backed by a recorded transaction signature."""

        with session_scope(factory) as session:
            violations = MarketRepository(session).verify_mirror_invariant()
        return schemas.InvariantReport(
            ok=not violations,
            violations=[schemas.MirrorViolation(**asdict(violation)) for violation in violations],
        )

    return app


app = create_app()
