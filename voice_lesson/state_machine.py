"""レッスン状態管理

音声レッスン画面の状態遷移を明示的に管理します。
同時に処理できるターンは1つだけで、LISTENINGへはIDLEからしか入れません。
"""

from enum import Enum, auto
import logging

logger = logging.getLogger(__name__)


class LessonState(Enum):
    """
    レッスン状態定義

    Attributes:
        IDLE: 待機中（マイクボタン押下待ち）
        LISTENING: 録音中（ボタン押下中）
        THINKING: 考え中（対話・音声合成の応答待ち）
        SPEAKING: 発話中（合成音声の再生中）
        ERROR: エラー発生（直ちにIDLEへ戻る）
    """
    IDLE = auto()        # 待機中（マイクボタン押下待ち）
    LISTENING = auto()   # 録音中（ボタン押下中）
    THINKING = auto()    # 考え中（対話・音声合成の応答待ち）
    SPEAKING = auto()    # 発話中（合成音声の再生中）
    ERROR = auto()       # エラー発生（直ちにIDLEへ戻る）


class StateTransition:
    """
    状態遷移管理

    レッスンの状態遷移ルールを定義し、不正な状態遷移を検出します。
    どの状態からもERRORへ遷移でき、ERRORからはIDLEにのみ戻ります。
    """

    ALLOWED_TRANSITIONS = {
        LessonState.IDLE: {LessonState.LISTENING, LessonState.ERROR},
        LessonState.LISTENING: {LessonState.THINKING, LessonState.IDLE, LessonState.ERROR},
        LessonState.THINKING: {LessonState.SPEAKING, LessonState.IDLE, LessonState.ERROR},
        LessonState.SPEAKING: {LessonState.IDLE, LessonState.ERROR},
        LessonState.ERROR: {LessonState.IDLE},
    }

    @classmethod
    def is_valid_transition(cls, from_state: LessonState, to_state: LessonState) -> bool:
        """
        状態遷移の妥当性チェック

        Examples:
            >>> StateTransition.is_valid_transition(LessonState.IDLE, LessonState.LISTENING)
            True
            >>> StateTransition.is_valid_transition(LessonState.IDLE, LessonState.SPEAKING)
            False
        """
        return to_state in cls.ALLOWED_TRANSITIONS.get(from_state, set())

    @classmethod
    def get_allowed_transitions(cls, from_state: LessonState) -> set:
        """指定した状態から遷移可能な状態のセット"""
        return cls.ALLOWED_TRANSITIONS.get(from_state, set())
