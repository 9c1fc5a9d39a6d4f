from __future__ import annotations

from enum import Enum

from ..errors import ReviewValidationError


RED_ROOM_THRESHOLD = 70.0
YELLOW_ROOM_THRESHOLD = 85.0


class Room(str, Enum):
    """Performance bucket of a topic, ordered worst to best.

    - triagem: まだ一問も解答されていない
    - vermelha: 正答率 70% 未満
    - amarela: 70% 以上 85% 未満
    - verde: 85% 以上
    """

    triagem = "triagem"
    vermelha = "vermelha"
    amarela = "amarela"
    verde = "verde"

    @property
    def rank(self) -> int:
        return _ROOM_ORDER.index(self)

    # str の辞書順ではなく成績順で比較する
    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Room):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Room):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Room):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Room):
            return NotImplemented
        return self.rank >= other.rank


_ROOM_ORDER: tuple[Room, ...] = (Room.triagem, Room.vermelha, Room.amarela, Room.verde)


def classify_room(questions_answered: int, questions_correct: int) -> Room:
    """Classify a topic into a room from its aggregate answer counts.

    正答率 = correct / answered * 100 で判定する。解答数ゼロは triagem。
    集計側のバグで負数や correct > answered が渡された場合は、状態を変更する
    前に ReviewValidationError で拒否する。
    """

    if questions_answered < 0 or questions_correct < 0:
        raise ReviewValidationError(
            f"answer counts must be non-negative (answered={questions_answered}, correct={questions_correct})"
        )
    if questions_correct > questions_answered:
        raise ReviewValidationError(
            f"correct answers exceed answered questions ({questions_correct} > {questions_answered})"
        )
    if questions_answered == 0:
        return Room.triagem

    accuracy = questions_correct / questions_answered * 100
    if accuracy < RED_ROOM_THRESHOLD:
        return Room.vermelha
    if accuracy < YELLOW_ROOM_THRESHOLD:
        return Room.amarela
    return Room.verde
