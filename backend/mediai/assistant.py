"""
Generative-AI adapter for chat replies and medical image analysis.

Chain of Thought:
- Chat replies: system prompt + recent history + user message through ChatOpenAI
- Image analysis: the hosted image URL and the user's question in one multimodal message
- Every reply is cleaned and scanned for booking intent before it becomes a Message
"""

import logging
import uuid
from typing import List, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder
from langchain_openai import ChatOpenAI

from mediai.config import LLM_MODEL, OPENAI_API_KEY
from mediai.models import Message, MessageRole
from mediai.text_heuristics import clean_response, suggests_booking

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10

CHAT_SYSTEM_PROMPT = """You are an AI medical assistant. Your role is to:
1. Ask relevant questions about symptoms
2. Provide preliminary analysis
3. Recommend appropriate medications and treatments
4. Give recovery procedures and lifestyle advice
5. Always remind users to seek professional medical help for serious conditions

Please respond in a professional, caring manner."""

IMAGE_ANALYSIS_PROMPT = """You are a medical professional analyzing this medical image. The patient asks: "{question}"

Please provide a comprehensive analysis covering:
Image Type, Anatomical Region, Key Findings, Clinical Interpretation,
Recommendations and Important Notes (including the limitations of this analysis
and a reminder about professional medical consultation).

Please be thorough and precise while explaining in patient-friendly terms."""


class EmptyResponseError(RuntimeError):
    pass


class MedicalAssistant:
    def __init__(self, llm: Optional[BaseChatModel] = None):
        self.llm = llm or ChatOpenAI(
            model=LLM_MODEL,
            temperature=0.3,
            api_key=OPENAI_API_KEY
        )
        self.prompt = ChatPromptTemplate.from_messages([
            ("system", CHAT_SYSTEM_PROMPT),
            MessagesPlaceholder("history"),
            ("human", "{message}"),
        ])

    def _history(self, messages: List[Message]):
        history = []
        for message in messages[-HISTORY_LIMIT:]:
            if message.is_loading:
                continue
            if message.role == MessageRole.USER:
                history.append(HumanMessage(content=message.content))
            else:
                history.append(AIMessage(content=message.content))
        return history

    def _to_message(self, content) -> Message:
        text = content if isinstance(content, str) else str(content)
        if not text.strip():
            raise EmptyResponseError("Empty response from AI")
        cleaned = clean_response(text)
        return Message(
            id=uuid.uuid4().hex,
            role=MessageRole.ASSISTANT,
            content=cleaned,
            suggests_booking=suggests_booking(cleaned),
        )

    async def reply(self, text: str, history: Optional[List[Message]] = None) -> Message:
        chain = self.prompt | self.llm
        response = await chain.ainvoke({"message": text, "history": self._history(history or [])})
        return self._to_message(response.content)

    async def analyze_image(self, image_url: str, question: str) -> Message:
        logger.info(f"Analyzing medical image {image_url}")
        response = await self.llm.ainvoke([
            SystemMessage(content=CHAT_SYSTEM_PROMPT),
            HumanMessage(content=[
                {"type": "text", "text": IMAGE_ANALYSIS_PROMPT.format(question=question)},
                {"type": "image_url", "image_url": {"url": image_url}},
            ]),
        ])
        return self._to_message(response.content)
