"""Backend selection and model listing.

Tie-break policy: when a model is requested, the first backend in stable
(store) order that supports it wins. Without a model, the choice is
uniformly random across active backends.
"""

import random
import time

from src.gateway.errors import BackendInactive, ModelNotFound, ModelNotSupported
from src.store.models import BackendConfig


def supported_models(backends: list[BackendConfig]) -> list[str]:
    """Union of all advertised models, first-seen order."""
    seen: dict[str, None] = {}
    for backend in backends:
        for model in backend.supported_models:
            seen.setdefault(model, None)
    return list(seen)


def select_backend(
    backends: list[BackendConfig],
    requested_model: str | None = None,
    rng: random.Random | None = None,
) -> BackendConfig:
    """Pick exactly one active backend for the request."""
    candidates = [b for b in backends if b.active]
    if not candidates:
        raise BackendInactive()

    if not requested_model:
        return (rng or random).choice(candidates)

    for backend in candidates:
        if backend.supports(requested_model):
            return backend

    raise ModelNotSupported(requested_model, supported_models(candidates))


def _model_object(model: str, backend: BackendConfig, created: int) -> dict:
    return {
        "id": model,
        "object": "model",
        "created": created,
        "owned_by": backend.display_name,
    }


def list_models(backends: list[BackendConfig], created: int | None = None) -> dict:
    """OpenAI ``/v1/models`` payload, de-duplicated by model id."""
    created = int(time.time()) if created is None else created
    data = []
    seen = set()
    for backend in backends:
        if not backend.active:
            continue
        for model in backend.supported_models:
            if model in seen:
                continue
            seen.add(model)
            data.append(_model_object(model, backend, created))
    return {"object": "list", "data": data}


def find_model(backends: list[BackendConfig], model: str, created: int | None = None) -> dict:
    created = int(time.time()) if created is None else created
    for backend in backends:
        if backend.active and backend.supports(model):
            return _model_object(model, backend, created)
    raise ModelNotFound(model)
