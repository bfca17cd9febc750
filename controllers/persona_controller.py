from typing import Any, Dict, Optional

from fastapi import HTTPException, Request

from services.persona_generator import (
    GenerationInputError,
    GenerationRequest,
    IllustrationError,
    PersonaGenerator,
    ProviderConnection,
)


def _get_generator(request: Request) -> PersonaGenerator:
    generator = getattr(request.app.state, "persona_generator", None)
    if generator is None:
        raise HTTPException(status_code=500, detail="Persona generator not initialized.")
    return generator


async def generate_persona(
    request: Request,
    generation: GenerationRequest,
    connection: ProviderConnection,
) -> Dict[str, Any]:
    """Generate a persona through the relay, parse it and store it.

    Args:
        request: FastAPI Request (used to access app.state).
        generation: Concept, name, point of view and optional context.
        connection: Provider address, credential and model.

    Returns:
        The generation outcome: result id, structured record, raw transcript,
        the prompt-save report and any non-fatal warnings.

    Raises:
        HTTPException(400) if the request fails validation. Relay errors
        propagate to the application's error handler.
    """
    generator = _get_generator(request)
    try:
        outcome = await generator.generate(generation, connection)
    except GenerationInputError as exc:
        raise HTTPException(status_code=400, detail=f"Configuration errors: {', '.join(exc.errors)}") from exc
    return outcome.to_dict()


async def illustrate_persona(
    request: Request,
    result_id: int,
    connection: ProviderConnection,
    prompt: Optional[str],
    size: Optional[str],
    extra: Dict[str, Any],
) -> Dict[str, Any]:
    """Generate and attach a new illustration to a stored persona."""
    generator = _get_generator(request)
    try:
        outcome = await generator.illustrate(result_id, connection, prompt=prompt, size=size, extra=extra)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except IllustrationError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return outcome.to_dict()
