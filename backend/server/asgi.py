"""
ASGI entry point for the transcription service.

    uvicorn server.asgi:app --app-dir backend

.env is read before config so local API keys (DEEPGRAM_API_KEY,
OPENAI_API_KEY) are visible to AppConfig.load_from_env().
"""

from dotenv import load_dotenv

load_dotenv()

from server.app import create_app  # pylint: disable=wrong-import-position

app = create_app()
