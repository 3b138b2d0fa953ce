import os
import sys

from dotenv import load_dotenv
from langchain_google_genai import ChatGoogleGenerativeAI, GoogleGenerativeAIEmbeddings
from langchain_groq import ChatGroq

from rag_agent.exception.custom_exception import RagAgentException
from rag_agent.logger import GLOBAL_LOGGER as log
from rag_agent.utils.config_loader import load_config

PROVIDER_KEYS = {
    "google": "GOOGLE_API_KEY",
    "groq": "GROQ_API_KEY",
}


class ApiKeyManager:
    """Loads the API keys needed by the providers referenced in the config."""

    def __init__(self, providers: set[str]):
        load_dotenv()
        self.keys = {}
        missing = []

        for provider in sorted(providers):
            key_name = PROVIDER_KEYS.get(provider)
            if key_name is None:
                raise RagAgentException(f"Unsupported provider {provider}")
            if val := os.getenv(key_name):
                self.keys[key_name] = val
                log.info("Loaded API key from env | key=%s", key_name)
            else:
                log.error("Missing required API key | key=%s", key_name)
                missing.append(key_name)

        if missing:
            raise RagAgentException(f"Missing API Keys: {', '.join(missing)}", sys)

    def get(self, key: str) -> str:
        return self.keys[key]


class ModelLoader:
    """
    Responsible for:
    - Loading the embedding model
    - Loading the planner LLM (tool selection)
    - Loading the answer LLM (streamed responses)
    """

    def __init__(self, config: dict | None = None):
        self.config = config or load_config()
        log.info("YAML config loaded | config_keys=%s", list(self.config.keys()))

        providers = {self.config["embedding_model"].get("provider", "google")}
        providers.update(role["provider"] for role in self.config.get("llm", {}).values())
        self.api_key_mgr = ApiKeyManager(providers)

    def load_embeddings(self):
        """Embedding model used for both segments and queries."""
        settings = self.config["embedding_model"]
        log.info("Loading embedding model | model=%s", settings["model_name"])
        try:
            return GoogleGenerativeAIEmbeddings(
                model=settings["model_name"],
                google_api_key=self.api_key_mgr.get("GOOGLE_API_KEY"),
            )
        except Exception as e:
            log.error("Embedding model failed to load | error=%s", str(e))
            raise RagAgentException("Failed to load embedding model", e) from e

    def load_llm(self, role: str):
        """
        Build the chat model configured for a role.

        Args:
            role: "planner" (tool selection) or "answer" (streamed replies)
        """
        settings = self.config.get("llm", {}).get(role)
        if settings is None:
            log.error("LLM role not found in config | role=%s", role)
            raise ValueError(f"LLM role '{role}' not found in config")

        provider = settings["provider"]
        builder = {"google": self._google_chat, "groq": self._groq_chat}.get(provider)
        if builder is None:
            raise ValueError(f"Unsupported provider {provider}")

        log.info(
            "Loading LLM | role=%s | provider=%s | model=%s",
            role, provider, settings["model_name"],
        )
        return builder(settings)

    def _google_chat(self, settings: dict):
        return ChatGoogleGenerativeAI(
            model=settings["model_name"],
            google_api_key=self.api_key_mgr.get("GOOGLE_API_KEY"),
            temperature=settings.get("temperature"),
            max_output_tokens=settings.get("max_tokens"),
        )

    def _groq_chat(self, settings: dict):
        return ChatGroq(
            model=settings["model_name"],
            api_key=self.api_key_mgr.get("GROQ_API_KEY"),
            temperature=settings.get("temperature"),
            max_tokens=settings.get("max_tokens"),
        )
