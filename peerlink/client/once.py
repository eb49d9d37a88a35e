"""한 번만 실행되는 지연 동작

Peer Session의 "협상 완료" 동작은 (offer 수신, 렌더 대상 준비) 두 사건이 모두
일어난 뒤 정확히 한 번 실행되어야 한다. 두 사건이 어떤 순서로, 혹은 서로 다른
스레드의 콜백에서 동시에 일어나더라도 동작의 소유권은 한 호출자에게만 넘어간다.
"""

import threading
from collections.abc import Callable, Iterable


class DeferredAction:
    """조건이 모두 충족되면 보관된 동작을 한 호출자에게만 넘겨준다

    provide()/satisfy()는 소유권을 얻은 경우에만 동작을 반환하고,
    반환받은 호출자가 실행한다. 슬롯 교체는 락 안에서 한 번에 이뤄지므로
    두 호출자가 같은 동작을 받는 일은 없다.
    """

    def __init__(self, conditions: Iterable[str]):
        self._lock = threading.Lock()
        self._required = frozenset(conditions)
        self._satisfied: set[str] = set()
        self._action: Callable[[], object] | None = None
        self._provided = False
        self._cancelled = False

    def provide(self, action: Callable[[], object]) -> Callable[[], object] | None:
        """실행할 동작 등록 (한 번만 가능)

        Returns:
            조건이 이미 모두 충족됐다면 동작 (호출자가 실행), 아니면 None
        """
        with self._lock:
            if self._provided or self._cancelled:
                return None
            self._provided = True
            self._action = action
            return self._take_locked()

    def satisfy(self, condition: str) -> Callable[[], object] | None:
        """조건 하나를 충족 처리

        Returns:
            이 호출로 모든 조건이 갖춰지고 동작이 등록돼 있으면 동작, 아니면 None
        """
        if condition not in self._required:
            raise ValueError(f"Unknown condition: {condition!r}")
        with self._lock:
            self._satisfied.add(condition)
            return self._take_locked()

    def cancel(self) -> None:
        """동작을 폐기 (이후 어떤 호출도 동작을 받지 못함)"""
        with self._lock:
            self._cancelled = True
            self._action = None

    def is_satisfied(self, condition: str) -> bool:
        with self._lock:
            return condition in self._satisfied

    @property
    def consumed(self) -> bool:
        """동작이 이미 넘겨졌는지 여부"""
        with self._lock:
            return self._provided and self._action is None and not self._cancelled

    def _take_locked(self) -> Callable[[], object] | None:
        if self._cancelled or self._action is None:
            return None
        if not self._required <= self._satisfied:
            return None
        action, self._action = self._action, None
        return action
