"""Vertex AI client wrapper using google-genai SDK.

Authentication is handled via Application Default Credentials (ADC).

Usage:
    from promopipe.services.vertex_client import get_vertex_client

    client = get_vertex_client()
"""

import os

from dotenv import load_dotenv
from google import genai

from promopipe.config import settings
from promopipe.errors import ConfigurationError

# Load .env for GOOGLE_APPLICATION_CREDENTIALS (ADC)
load_dotenv()

# Per-location client cache
_clients: dict[str, genai.Client] = {}


def get_vertex_client(location: str | None = None) -> genai.Client:
    """Get or create a Vertex AI client for the given location.

    Raises:
        ConfigurationError: If no Google Cloud project is configured.
    """
    project_id = settings.google_cloud.project_id
    if not project_id:
        raise ConfigurationError(
            "google_cloud.project_id is not set (PROMOPIPE_GOOGLE_CLOUD__PROJECT_ID)"
        )
    loc = location or settings.google_cloud.location

    if loc not in _clients:
        os.environ["GOOGLE_GENAI_USE_VERTEXAI"] = "true"
        os.environ["GOOGLE_CLOUD_PROJECT"] = project_id
        _clients[loc] = genai.Client(vertexai=True, project=project_id, location=loc)

    return _clients[loc]
