"""Embeddings and model-listing translation between OpenAI and Gemini."""

from __future__ import annotations

from typing import Any, Mapping

from ..core.exceptions import InvalidRequestError

DEFAULT_EMBEDDINGS_MODEL = "text-embedding-004"


def resolve_embeddings_model(requested: Any, default: str = DEFAULT_EMBEDDINGS_MODEL) -> tuple[str, str]:
    """Return (model name echoed to the client, Gemini resource path).

    Only ``models/...`` names reach Gemini as given; any other name is
    replaced by the default embeddings model.
    """
    if not isinstance(requested, str) or not requested:
        raise InvalidRequestError(
            "You must provide a model parameter", code="missing_parameter", param="model"
        )
    if requested.startswith("models/"):
        return requested, requested
    return default, f"models/{default}"


def embeddings_to_batch_request(
    payload: Mapping[str, Any], default_model: str = DEFAULT_EMBEDDINGS_MODEL
) -> tuple[str, str, dict[str, Any]]:
    """Translate an OpenAI embeddings request to Gemini batchEmbedContents.

    Returns:
        Tuple of (echo model name, Gemini model path, request body)
    """
    model_name, model_path = resolve_embeddings_model(payload.get("model"), default_model)

    inputs = payload.get("input")
    if inputs is None:
        raise InvalidRequestError(
            "You must provide an input parameter", code="missing_parameter", param="input"
        )
    if not isinstance(inputs, list):
        inputs = [inputs]
    if not inputs or not all(isinstance(text, str) for text in inputs):
        raise InvalidRequestError(
            "Input must be a string or array of strings",
            code="invalid_parameter",
            param="input",
        )

    dimensions = payload.get("dimensions")
    requests = []
    for text in inputs:
        request: dict[str, Any] = {
            "model": model_path,
            "content": {"parts": [{"text": text}]},
        }
        if dimensions is not None:
            request["outputDimensionality"] = dimensions
        requests.append(request)
    return model_name, model_path, {"requests": requests}


def batch_embeddings_to_openai(data: Mapping[str, Any], model: str) -> dict[str, Any]:
    embeddings = data.get("embeddings") or []
    return {
        "object": "list",
        "data": [
            {
                "object": "embedding",
                "index": index,
                "embedding": item.get("values", []),
            }
            for index, item in enumerate(embeddings)
        ],
        "model": model,
    }


def gemini_models_to_openai(data: Mapping[str, Any]) -> dict[str, Any]:
    """Convert a Gemini models listing into the OpenAI /v1/models shape."""
    models = data.get("models") or []
    listing = []
    for model in models:
        name = model.get("name", "")
        if name.startswith("models/"):
            name = name[len("models/"):]
        listing.append({
            "id": name,
            "object": "model",
            "created": 0,
            "owned_by": "",
        })
    return {"object": "list", "data": listing}
