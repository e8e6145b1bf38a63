"""
レッスンスクリプト - ペルソナ指示・ツール契約・レッスン文言

コンテンツ層から供給される静的なレッスン定義です。initialize_lesson()時に
一度だけ渡され、コアが変更することはありません。

収録レッスン:
- TAXI_RIDE_LESSON: ボゴタのタクシー運転手ホルヘとのロールプレイ（A1）
"""

from dataclasses import dataclass
from typing import Tuple

from .tools import ToolContract, ToolDeclaration

SHOW_HINT = "show_hint"
FINISH_LESSON = "finish_lesson"


@dataclass(frozen=True)
class LessonScript:
    """
    1レッスン分の静的定義

    Attributes:
        lesson_id (str): レッスン識別子
        title (str): 表示タイトル
        persona_instruction (str): キャラクター・会話フェーズ・訂正方針・終了条件を含むシステム指示
        tools (ToolContract): show_hint / finish_lesson の2操作契約
        completion_message (str): finish_lesson受信時に表示する文言
        example_phrases (tuple[str]): 学習者向けの例文
    """
    lesson_id: str
    title: str
    persona_instruction: str
    tools: ToolContract
    completion_message: str
    example_phrases: Tuple[str, ...] = ()


TAXI_RIDE_TOOLS = ToolContract(
    [
        ToolDeclaration(
            name=FINISH_LESSON,
            description=(
                "Call this once the student has paid and the ride is over. "
                "This ends the lesson."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "success": {
                        "type": "boolean",
                        "description": "Whether the student reached the lesson objective",
                    }
                },
                "required": ["success"],
            },
        ),
        ToolDeclaration(
            name=SHOW_HINT,
            description=(
                "Call this when the student is silent, stuck, or answers incorrectly "
                "more than once. May be called any number of times."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "hint_text": {
                        "type": "string",
                        "description": 'Short hint shown on screen, e.g. "Try: Voy al hotel..."',
                    }
                },
                "required": ["hint_text"],
            },
        ),
    ],
    version="taxi-ride/1",
)


TAXI_RIDE_INSTRUCTION = """
SCENARIO: Spanish roleplay for an A1 learner. This is a guided lesson, not an open chat.

You are Jorge, a friendly and talkative taxi driver in Bogota. The student is your passenger.

RULES:
1. Speak Spanish only. If the student answers in English, say you don't understand and ask
   for Spanish ("¿Cómo? No te entiendo. ¿En español?").
2. Use short, common words and speak clearly. Keep every reply under 15 words.
3. Never solve the task for the student. Wait, or give a small hint with the show_hint tool.

PHASES (follow in order, never say the phase names):
1. GREETING: Say hello and ask where you are going ("¿A dónde vamos?"). Wait for a destination.
2. SMALL TALK: Repeat the destination and ask if it is their first time in Colombia. Wait for yes/no.
3. ORIGIN: Ask where they are from ("¿De dónde eres?").
   If the grammar is wrong (e.g. "Yo ser de..."), correct it implicitly by repeating the right
   form ("Ah, eres de...") and move on.
4. PAYMENT: Say you have arrived and ask "¿Efectivo o tarjeta?".
5. END: Say "¡Bienvenido!" and call the finish_lesson tool with success=true.

If the student is silent or stuck, call show_hint with a short phrase they can say next.
""".strip()


TAXI_RIDE_LESSON = LessonScript(
    lesson_id="taxi-ride-bogota",
    title="Taxi ride in Bogotá",
    persona_instruction=TAXI_RIDE_INSTRUCTION,
    tools=TAXI_RIDE_TOOLS,
    completion_message="¡Excelente! You made it to your hotel. Lesson complete.",
    example_phrases=(
        "Voy al hotel, por favor.",
        "Sí, es mi primera vez en Colombia.",
        "Soy de Estados Unidos.",
        "Con tarjeta, por favor.",
    ),
)
