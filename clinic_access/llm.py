"""
LLM (Large Language Model) initialisation.
"""

import os
from typing import Optional

from langchain_openai import ChatOpenAI

from clinic_access.config import MODEL_NAME


def init_llm() -> Optional[ChatOpenAI]:
    """
    Initialise the ChatOpenAI instance used for comparison narratives.

    The access-control service runs without it: when OPENAI_API_KEY is unset
    the narrative is simply omitted.
    """
    if not os.getenv("OPENAI_API_KEY"):
        print("[init] OPENAI_API_KEY not set; AI summaries disabled")
        return None
    llm = ChatOpenAI(model=MODEL_NAME, temperature=0)
    print(f"[init] Using LLM model: {MODEL_NAME}")
    return llm
