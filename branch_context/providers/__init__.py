from ..types import EmbeddingProviderError
from .openai_embeddings import OpenAIEmbeddings

__all__ = ["EmbeddingProviderError", "OpenAIEmbeddings"]
