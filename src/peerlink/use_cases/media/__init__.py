from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
from ...tools.logger import log_debug, log_info

DEFAULT_STREAM_NAME = "default"


@dataclass
class LocalStream:
    """A named group of already acquired local media tracks."""

    name: str
    tracks: List = field(default_factory=list)

    @property
    def track_ids(self) -> List[str]:
        return [track.id for track in self.tracks]

    @property
    def has_audio(self) -> bool:
        return any(track.kind == "audio" for track in self.tracks)

    @property
    def has_video(self) -> bool:
        return any(track.kind == "video" for track in self.tracks)

    def stop(self):
        for track in self.tracks:
            track.stop()


class LocalMediaRegistry:
    """
    Named local streams handed over by the media source.

    on_change() fires whenever a named (non default) stream is registered or
    closed, so the published mediaIds room field can be refreshed.
    """

    def __init__(self):
        self._streams: Dict[str, LocalStream] = {}
        self.on_change: Optional[Callable] = None

    def register(self, tracks, name: str = None) -> LocalStream:
        name = name or DEFAULT_STREAM_NAME
        stream = LocalStream(name=name, tracks=list(tracks))
        self._streams[name] = stream
        log_info(f"Registered local stream '{name}' with {len(stream.tracks)} tracks")
        if name != DEFAULT_STREAM_NAME:
            self._changed()
        return stream

    def get(self, name: str = None) -> Optional[LocalStream]:
        return self._streams.get(name or DEFAULT_STREAM_NAME)

    def names(self) -> List[str]:
        return list(self._streams)

    def close(self, name: str = None) -> Optional[LocalStream]:
        name = name or DEFAULT_STREAM_NAME
        stream = self._streams.pop(name, None)
        if stream is None:
            log_debug(f"Attempt to close unknown local stream '{name}'")
            return None
        stream.stop()
        self._changed()
        return stream

    def media_ids(self) -> Dict[str, List[str]]:
        """Stream name -> track ids, as published to the room in the mediaIds field."""
        return {name: stream.track_ids for name, stream in self._streams.items()}

    def sharing(self) -> Dict[str, bool]:
        return {
            "audio": any(stream.has_audio for stream in self._streams.values()),
            "video": any(stream.has_video for stream in self._streams.values()),
        }

    def _changed(self):
        if self.on_change:
            self.on_change()
