"""
LLM Gateway Package

One entry point for every language-model call the pipeline makes
(extraction passes and QA generation), over LangChain's ChatOpenAI.

Public API::

    from docqa.llm import LLMGateway

    gateway  = LLMGateway(settings)
    response = await gateway.invoke(prompt, payload=pdf_bytes, mime_type="application/pdf")
"""

from docqa.llm.gateway import GatewayResponse, LLMGateway

__all__ = ["GatewayResponse", "LLMGateway"]
