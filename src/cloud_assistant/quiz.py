"""Certification-style practice questions generated by the model."""
from __future__ import annotations

import logging
import random
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .llm import ModelChannel, ModelChannelError, parse_json_reply

logger = logging.getLogger(__name__)

TOPICS = [
    "Fundamentals of Generative AI: how gen AI models work, ML approaches (supervised, unsupervised, "
    "reinforcement learning), foundation models, LLMs, multimodal models, diffusion models, data types "
    "and data preparation",
    "Google Cloud GCP AI Offerings: Vertex AI, Model Garden, Gemini models, Gemma open models, Imagen, "
    "Veo, Agent Builder, Grounding, RAG on Vertex, fine-tuning, BigQuery ML",
    "Model Output Quality and Evaluation: prompt engineering techniques, temperature settings, "
    "hallucination and grounding, RAG for factual accuracy, evaluation metrics, responsible AI "
    "principles, bias and safety filters",
    "Business Strategy and ROI for Generative AI: build vs buy decisions, total cost of ownership, "
    "change management, identifying high-value AI use cases, measuring business impact, governance "
    "and data privacy",
    "Real-world Google Cloud Gen AI Use Cases: customer service agents, document processing and "
    "summarization, code generation with Gemini, enterprise search, content creation, contact center "
    "AI, retail and healthcare applications",
]

QUIZ_PROMPT = (
    "You are an expert question writer for the Google Cloud Generative AI Leader certification exam. "
    "Generate one unique, challenging multiple-choice exam question about this topic: {topic}. "
    "The question should be scenario-based (set in a business context), like the real exam. "
    "Each wrong option must have a plausible but clearly incorrect reason. "
    "Return ONLY valid JSON in exactly this format: "
    '{{"q":"question text","options":["option A text","option B text","option C text","option D text"],'
    '"correct":2,"explanations":["explanation for A","explanation for B","explanation for C","explanation for D"]}} '
    "where correct is the 0-based index of the correct option. "
    'Each explanation must start with the letter label (e.g. "A is correct because..."). '
    "Make exactly 4 options. Do not include labels like A) or 1) inside the option text itself."
)


class QuizError(RuntimeError):
    pass


class QuizQuestion(BaseModel):
    q: str = Field(..., min_length=1)
    options: List[str] = Field(..., min_length=4, max_length=4)
    correct: int = Field(..., ge=0, le=3)
    explanations: List[str] = Field(..., min_length=4, max_length=4)

    @field_validator("correct", mode="before")
    @classmethod
    def _strict_int(cls, v):
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError("correct must be an integer index")
        return v


async def generate_question(
    channel: ModelChannel,
    *,
    model: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> QuizQuestion:
    topic = (rng or random).choice(TOPICS)
    try:
        text = await channel.generate(QUIZ_PROMPT.format(topic=topic), model=model)
        return QuizQuestion.model_validate(parse_json_reply(text))
    except ModelChannelError as e:
        raise QuizError(f"model failed: {e}") from e
    except (ValueError, ValidationError) as e:
        raise QuizError(f"invalid question format from model: {e}") from e
