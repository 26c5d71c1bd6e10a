"""渐进式文本展示（打字机 / 淡入）。

TextStream 不依赖任何 UI 框架：frames() 逐帧产出当前应展示的前缀文本，
consume() 用于把已经是增量块的可迭代对象累积起来。
节奏参数（每帧字符数、帧间延迟、淡入时长）由 speed 推导，也可以显式覆盖。
"""

import math
import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Literal, Optional

StreamMode = Literal["typewriter", "fade"]

_WORD_SPLIT = re.compile(r"(\s+)")


@dataclass
class Segment:
    text: str
    index: int


def _js_round(value: float) -> int:
    return int(math.floor(value + 0.5))


class TextStream:
    def __init__(
        self,
        speed: int = 20,
        mode: StreamMode = "typewriter",
        on_complete: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        fade_duration: Optional[int] = None,
        segment_delay: Optional[int] = None,
        character_chunk_size: Optional[int] = None,
    ):
        self.speed = speed
        self.mode = mode
        self.on_complete = on_complete
        self.on_error = on_error
        self.fade_duration = fade_duration
        self.segment_delay = segment_delay
        self.character_chunk_size = character_chunk_size

        self.displayed_text = ""
        self.is_complete = False
        self.segments: List[Segment] = []
        self._index = 0
        self._paused = False
        self._completed = False

    def _normalized_speed(self) -> int:
        return min(100, max(1, self.speed if self.speed is not None else 20))

    def chunk_size(self) -> int:
        """每帧追加的字符数。"""
        if isinstance(self.character_chunk_size, int):
            return max(1, self.character_chunk_size)
        speed = self._normalized_speed()
        if self.mode == "typewriter":
            if speed < 25:
                return 1
            return max(1, _js_round((speed - 25) / 10))
        return 1

    def processing_delay(self) -> int:
        """两帧之间的最小间隔（毫秒）。"""
        if isinstance(self.segment_delay, int):
            return max(0, self.segment_delay)
        return max(1, _js_round(100 / math.sqrt(self._normalized_speed())))

    def get_fade_duration(self) -> int:
        if isinstance(self.fade_duration, int):
            return max(10, self.fade_duration)
        return _js_round(1000 / math.sqrt(self._normalized_speed()))

    def get_segment_delay(self) -> int:
        return self.processing_delay()

    def reset(self) -> None:
        self._index = 0
        self.displayed_text = ""
        self.segments = []
        self.is_complete = False
        self._completed = False
        self._paused = False

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def frames(self, text: str) -> Iterator[str]:
        """逐帧产出展示文本；暂停后停止产出，resume() 后再次调用会从断点继续。"""

        while self._index < len(text):
            if self._paused:
                return
            end = min(self._index + self.chunk_size(), len(text))
            self.displayed_text = text[:end]
            if self.mode == "fade":
                self._update_segments(self.displayed_text)
            self._index = end
            yield self.displayed_text
        self._mark_complete()

    def run(self, text: str, sleep: Callable[[float], None] = time.sleep) -> str:
        for _ in self.frames(text):
            delay = self.processing_delay()
            if delay:
                sleep(delay / 1000.0)
        return self.displayed_text

    def consume(self, chunks: Iterable[str]) -> str:
        """累积增量块；出错时交给 on_error，没有 on_error 则继续抛出。"""

        displayed = ""
        try:
            for chunk in chunks:
                displayed += chunk
                self.displayed_text = displayed
                self._update_segments(displayed)
        except Exception as e:
            self._mark_complete()
            if self.on_error is None:
                raise
            self.on_error(e)
            return self.displayed_text
        self._mark_complete()
        return self.displayed_text

    def _update_segments(self, text: str) -> None:
        if self.mode != "fade":
            return
        words = [w for w in _WORD_SPLIT.split(text) if w]
        self.segments = [Segment(text=w, index=i) for i, w in enumerate(words)]

    def _mark_complete(self) -> None:
        if self._completed:
            return
        self._completed = True
        self.is_complete = True
        if self.on_complete:
            self.on_complete(self.displayed_text)
