"""
Local media control: capture, mute/unmute and screen-share track substitution.

Disabling a track never renegotiates. A disabled ToggleableTrack keeps
producing frames with the source's timing, replaced by silence or black.
"""
import asyncio
from typing import Callable, Dict, Optional, Set

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame

from ..core.config import ClientConfig
from ..core.exceptions import MediaAcquisitionError
from ..core.logging import LoggerMixin, debug_log


def _black_video_frame(frame: VideoFrame) -> VideoFrame:
    blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    for index, plane in enumerate(blank.planes):
        # Y=16, U=V=128 is black in limited-range YUV
        plane.update(bytes([16 if index == 0 else 128]) * plane.buffer_size)
    blank.pts = frame.pts
    if frame.time_base is not None:
        blank.time_base = frame.time_base
    return blank


def _silent_audio_frame(frame: AudioFrame) -> AudioFrame:
    silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    if frame.time_base is not None:
        silent.time_base = frame.time_base
    return silent


class ToggleableTrack(MediaStreamTrack):
    """Wraps a captured track and adds an ``enabled`` flag."""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "video":
            return _black_video_frame(frame)
        return _silent_audio_frame(frame)

    def stop(self):
        super().stop()
        self.source.stop()


class MediaCapture:
    """Interface to the OS capture of camera, microphone and screen."""

    async def get_user_media(self, audio: bool = True, video: bool = True) -> Dict[str, MediaStreamTrack]:
        raise NotImplementedError

    async def get_display_media(self) -> MediaStreamTrack:
        raise NotImplementedError


class PlayerMediaCapture(MediaCapture):
    """Captures devices through aiortc's MediaPlayer (FFmpeg input formats)."""

    def __init__(self, config: ClientConfig):
        self.config = config

    async def _open(self, device: str, fmt: Optional[str], options: Optional[dict] = None) -> MediaPlayer:
        loop = asyncio.get_running_loop()
        try:
            # Opening the device blocks on FFmpeg
            return await loop.run_in_executor(
                None, lambda: MediaPlayer(device, format=fmt, options=options or {})
            )
        except Exception as e:
            raise MediaAcquisitionError(
                f"Cannot open capture device {device}",
                {"format": fmt, "error": str(e), "error_type": type(e).__name__}
            ) from e

    async def get_user_media(self, audio: bool = True, video: bool = True) -> Dict[str, MediaStreamTrack]:
        tracks: Dict[str, MediaStreamTrack] = {}
        try:
            if audio:
                player = await self._open(self.config.microphone_device, self.config.microphone_format)
                if player.audio is None:
                    raise MediaAcquisitionError(f"No audio stream on {self.config.microphone_device}")
                tracks['audio'] = player.audio
            if video:
                player = await self._open(
                    self.config.camera_device, self.config.camera_format, self.config.get_player_options()
                )
                if player.video is None:
                    raise MediaAcquisitionError(f"No video stream on {self.config.camera_device}")
                tracks['video'] = player.video
        except MediaAcquisitionError:
            for track in tracks.values():
                track.stop()
            raise
        return tracks

    async def get_display_media(self) -> MediaStreamTrack:
        player = await self._open(
            self.config.screen_device, self.config.screen_format, self.config.get_player_options()
        )
        if player.video is None:
            raise MediaAcquisitionError(f"No video stream on {self.config.screen_device}")
        return player.video


class MediaControl(LoggerMixin):
    """Owns the local tracks and keeps every PeerLink's outgoing media in sync."""

    def __init__(self, peer_manager, capture: MediaCapture):
        super().__init__()
        self.peer_manager = peer_manager
        self.capture = capture

        self.audio_track: Optional[ToggleableTrack] = None
        self.video_track: Optional[ToggleableTrack] = None
        self.screen_track: Optional[MediaStreamTrack] = None
        self.preview_track: Optional[MediaStreamTrack] = None

        self.preview_callbacks: Set[Callable] = set()

    async def start(self, audio: bool = True, video: bool = True) -> Dict[str, ToggleableTrack]:
        """Acquire camera and microphone and hand them to the peer manager.

        Raises MediaAcquisitionError when the devices are denied or unavailable.
        Once started, returns the live tracks without capturing again.
        """
        if self.is_started:
            return self.local_tracks
        captured = await self.capture.get_user_media(audio=audio, video=video)
        tracks = {kind: ToggleableTrack(track) for kind, track in captured.items()}

        self.audio_track = tracks.get('audio')
        self.video_track = tracks.get('video')
        self.peer_manager.set_local_tracks(tracks)
        self._set_preview(self.video_track)

        debug_log(f"🎙️ [MediaControl] Local media started", {"tracks": list(tracks.keys())})
        return tracks

    @property
    def is_started(self) -> bool:
        return self.audio_track is not None or self.video_track is not None

    @property
    def local_tracks(self) -> Dict[str, ToggleableTrack]:
        tracks = {'audio': self.audio_track, 'video': self.video_track}
        return {kind: track for kind, track in tracks.items() if track is not None}

    @property
    def is_mic_on(self) -> bool:
        return self.audio_track is not None and self.audio_track.enabled

    @property
    def is_cam_on(self) -> bool:
        return self.video_track is not None and self.video_track.enabled

    @property
    def is_sharing(self) -> bool:
        return self.screen_track is not None

    def set_audio_enabled(self, enabled: bool) -> bool:
        if self.audio_track is None:
            return False
        self.audio_track.enabled = enabled
        self.log_info(f"Microphone {'enabled' if enabled else 'disabled'}")
        return enabled

    def set_video_enabled(self, enabled: bool) -> bool:
        if self.video_track is None:
            return False
        self.video_track.enabled = enabled
        self.log_info(f"Camera {'enabled' if enabled else 'disabled'}")
        return enabled

    def toggle_audio(self) -> bool:
        return self.set_audio_enabled(not self.is_mic_on)

    def toggle_video(self) -> bool:
        return self.set_video_enabled(not self.is_cam_on)

    async def start_screen_share(self) -> MediaStreamTrack:
        """Send a screen capture instead of the camera on every PeerLink."""
        if self.screen_track is not None:
            return self.screen_track

        track = await self.capture.get_display_media()
        self.screen_track = track
        updated = self.peer_manager.replace_outgoing_track('video', track)
        self._set_preview(track)

        @track.on("ended")
        def on_ended():
            if self.screen_track is track:
                debug_log(f"🖥️ [MediaControl] Screen capture ended")
                self.stop_screen_share()

        debug_log(f"🖥️ [MediaControl] Screen share started", {"links_updated": updated})
        return track

    def stop_screen_share(self):
        """Restore the camera track on every PeerLink."""
        track = self.screen_track
        if track is None:
            return
        self.screen_track = None

        updated = self.peer_manager.replace_outgoing_track('video', self.video_track)
        self._set_preview(self.video_track)
        track.stop()

        debug_log(f"🖥️ [MediaControl] Screen share stopped", {"links_updated": updated})

    def stop(self):
        """Stop every captured track."""
        self.stop_screen_share()
        for track in (self.audio_track, self.video_track):
            if track is not None:
                track.stop()
        self.audio_track = None
        self.video_track = None
        self._set_preview(None)

    def add_preview_callback(self, callback: Callable):
        self.preview_callbacks.add(callback)

    def _set_preview(self, track: Optional[MediaStreamTrack]):
        if track is self.preview_track:
            return
        self.preview_track = track
        for callback in list(self.preview_callbacks):
            try:
                callback(track)
            except Exception as e:
                self.log_error(f"Error in preview callback", {"error": str(e)})
