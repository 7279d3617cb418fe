"""Wire encoding for signal envelopes and chat messages.

Envelopes and messages are JSON-encoded for text-based Redis transport.
"""

from pydantic import ValidationError

from consultation.models import ChatMessage, SignalEnvelope


def encode_envelope(envelope: SignalEnvelope) -> str:
    """Serialize an envelope to JSON."""
    return envelope.model_dump_json()


def decode_envelope(raw: str | bytes) -> SignalEnvelope:
    """Deserialize an envelope from JSON.

    Raises:
        ValueError: If the data is not a valid envelope
    """
    try:
        return SignalEnvelope.model_validate_json(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid signal envelope: {e}") from e


def encode_message(message: ChatMessage) -> str:
    """Serialize a chat message to JSON."""
    return message.model_dump_json()


def decode_message(raw: str | bytes) -> ChatMessage:
    """Deserialize a chat message from JSON.

    Raises:
        ValueError: If the data is not a valid chat message
    """
    try:
        return ChatMessage.model_validate_json(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid chat message: {e}") from e
