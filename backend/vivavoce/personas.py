"""
Persona Selection
=================

Maps a course topic onto one of a fixed set of subject categories and picks the
AI counterpart (replica + persona) for a practice conversation or a formal oral
examination. Also renders the conversational context and opening greeting the
provider uses to brief the counterpart.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Tuple

from .schemas import SessionMode
from .settings import settings


CATEGORIES: Tuple[str, ...] = ("technology", "business", "science", "arts", "language", "default")

# Checked in order; the first category with a matching keyword wins.
TOPIC_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
	("technology", (
		"programming", "coding", "software", "tech", "javascript", "python",
		"react", "web development", "ai", "machine learning",
	)),
	("business", ("business", "marketing", "management", "finance", "entrepreneurship", "strategy")),
	("science", ("science", "physics", "chemistry", "biology", "mathematics", "math", "statistics", "data")),
	("arts", ("art", "design", "creative", "music", "writing", "literature")),
	("language", ("language", "english", "spanish", "french", "communication", "linguistics")),
]

EXAMINER_FOCUS: Dict[str, str] = {
	"technology": "Technical accuracy, problem-solving approach, understanding of underlying principles",
	"business": "Strategic reasoning, analytical thinking, practical business acumen",
	"science": "Scientific rigor, analytical precision, understanding of methodology",
	"arts": "Creative thinking, cultural understanding, interpretive ability",
	"language": "Language proficiency, cultural awareness, communication effectiveness",
	"default": "Conceptual accuracy, depth of analysis, practical application",
}


@dataclass(frozen=True)
class Persona:
	category: str
	replica_id: str
	persona_id: str


def _keyword_in(keyword: str, topic: str) -> bool:
	# Very short keywords must be whole words: "ai" is not in "domain", "art" is not in "artificial".
	if len(keyword) <= 3:
		words = topic.replace("-", " ").replace("/", " ").split()
		return any(word.strip(".,:;()") in (keyword, keyword + "s") for word in words)
	return keyword in topic


def category_for_topic(course_topic: str) -> str:
	topic = (course_topic or "").lower()
	for category, keywords in TOPIC_KEYWORDS:
		if any(_keyword_in(k, topic) for k in keywords):
			return category
	return "default"


def _persona_table() -> Dict[SessionMode, Dict[str, Persona]]:
	# One replica/persona pair is configured today; the table keeps the
	# per-mode, per-category seam so individual slots can be swapped later.
	table: Dict[SessionMode, Dict[str, Persona]] = {}
	for mode in SessionMode:
		table[mode] = {
			category: Persona(category=category, replica_id=settings.tavus_replica_id, persona_id=settings.tavus_persona_id)
			for category in CATEGORIES
		}
	return table


def select_persona(mode: SessionMode, course_topic: str) -> Persona:
	return _persona_table()[SessionMode(mode)][category_for_topic(course_topic)]


def conversational_context(user_name: str, course_topic: str, module_summary: str, mode: SessionMode) -> str:
	if SessionMode(mode) is SessionMode.PRACTICE:
		return (
			f"This is a practice conversation with {user_name} who has just completed a course on {course_topic}.\n\n"
			f"The main focus area they've been studying is: {module_summary}\n\n"
			"This is an informal, friendly discussion to help them apply their knowledge practically. "
			"Ask open-ended questions about real-world applications, encourage them to share their thoughts, "
			"give supportive feedback and help them connect theory to practice."
		)
	focus = EXAMINER_FOCUS[category_for_topic(course_topic)]
	return (
		f"You are conducting a rigorous oral examination for {user_name} who has completed a course on {course_topic}.\n\n"
		f"EXAMINATION FOCUS: {module_summary}\n\n"
		"Begin with fundamental concepts and terminology, progress to theoretical understanding, then to synthesis "
		"and critical analysis, and finish with original application scenarios. Ask follow-up questions to probe depth, "
		"use counterfactual questions, and give minimal guidance.\n\n"
		"SCORING APPROACH:\n"
		"- Conceptual Accuracy (30 points)\n"
		"- Analytical Depth (40 points)\n"
		"- Practical Application (30 points)\n\n"
		f"Evaluation focus for this field: {focus}."
	)


def custom_greeting(user_name: str, course_topic: str, mode: SessionMode) -> str:
	if SessionMode(mode) is SessionMode.PRACTICE:
		return (
			f"Hello {user_name}! Congratulations on completing your course on {course_topic}. "
			"This is a relaxed discussion about how you might apply what you've learned. "
			"What aspect of the course did you find most interesting or surprising?"
		)
	return (
		f"Good day, {user_name}. Welcome to your formal oral examination for the course on {course_topic}. "
		"I'll assess conceptual accuracy, analytical depth and practical application. "
		"Are you ready to begin the examination?"
	)
