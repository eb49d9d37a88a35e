"""원격 description 설정 전에 도착한 ICE candidate 버퍼"""

from collections import deque


class IceCandidateBuffer:
    """도착 순서를 유지하는 FIFO 버퍼"""

    def __init__(self):
        self._pending: deque[dict | None] = deque()

    def push(self, candidate: dict | None) -> None:
        self._pending.append(candidate)

    def extend(self, other: "IceCandidateBuffer") -> None:
        """다른 버퍼의 내용을 순서대로 옮겨 담음 (other는 비워짐)"""
        self._pending.extend(other.drain())

    def drain(self) -> list[dict | None]:
        """버퍼 내용을 도착 순서대로 반환하고 비움"""
        items = list(self._pending)
        self._pending.clear()
        return items

    def clear(self) -> None:
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending)
