from .review_api import ReviewApiClient, ResourceNotFoundError
from .llm import LlmClient, MalformedCompletionError
from .replies import (
    IdentityCache, IdentityResolver, ReplyGenerator, VoiceProfile,
    MissingIdentityError, IdentityOverrideNotAllowed,
)

__all__ = [
    "ReviewApiClient", "ResourceNotFoundError",
    "LlmClient", "MalformedCompletionError",
    "IdentityCache", "IdentityResolver", "ReplyGenerator", "VoiceProfile",
    "MissingIdentityError", "IdentityOverrideNotAllowed",
]
