"""
Configuration management for the Huddle relay and client.
"""
import os
from dataclasses import dataclass
from typing import Optional

from aiortc import RTCConfiguration, RTCIceServer


@dataclass
class ServerConfig:
    """Signaling relay configuration settings."""

    host: str = "0.0.0.0"
    port: int = 5000

    # Seconds between WebSocket heartbeat pings
    heartbeat: float = 30.0

    log_level: str = "INFO"
    log_file: str = "huddle_relay.log"

    def __post_init__(self):
        """Initialize configuration from environment variables."""
        self.host = os.environ.get('HUDDLE_HOST', self.host)
        self.port = int(os.environ.get('HUDDLE_PORT', os.environ.get('PORT', self.port)))
        self.heartbeat = float(os.environ.get('HUDDLE_HEARTBEAT', self.heartbeat))
        self.log_level = os.environ.get('HUDDLE_LOG_LEVEL', self.log_level)
        self.log_file = os.environ.get('HUDDLE_LOG_FILE', self.log_file)

    def __str__(self) -> str:
        return f"ServerConfig(host={self.host}, port={self.port}, heartbeat={self.heartbeat})"


@dataclass
class ClientConfig:
    """Conference client configuration settings."""

    signaling_url: str = "ws://localhost:5000/ws"

    # ICE configuration
    stun_url: str = "stun:stun.l.google.com:19302"
    turn_url: Optional[str] = None
    turn_username: Optional[str] = None
    turn_password: Optional[str] = None

    # Negotiation watchdog
    negotiation_timeout: float = 15.0
    negotiation_retries: int = 2

    # Capture devices, passed to aiortc's MediaPlayer
    camera_device: str = "/dev/video0"
    camera_format: Optional[str] = "v4l2"
    microphone_device: str = "default"
    microphone_format: Optional[str] = "pulse"
    screen_device: str = ":0.0"
    screen_format: Optional[str] = "x11grab"
    video_size: str = "640x480"
    framerate: str = "30"

    rtc_config: Optional[RTCConfiguration] = None

    def __post_init__(self):
        """Initialize configuration from environment variables."""
        self.signaling_url = os.environ.get('HUDDLE_SIGNALING_URL', self.signaling_url)

        self.stun_url = os.environ.get('HUDDLE_STUN_URL', self.stun_url)
        self.turn_url = os.environ.get('HUDDLE_TURN_URL', self.turn_url)
        self.turn_username = os.environ.get('HUDDLE_TURN_USERNAME', self.turn_username)
        self.turn_password = os.environ.get('HUDDLE_TURN_PASSWORD', self.turn_password)

        self.negotiation_timeout = float(
            os.environ.get('HUDDLE_NEGOTIATION_TIMEOUT', self.negotiation_timeout)
        )
        self.negotiation_retries = int(
            os.environ.get('HUDDLE_NEGOTIATION_RETRIES', self.negotiation_retries)
        )

        self.camera_device = os.environ.get('HUDDLE_CAMERA_DEVICE', self.camera_device)
        self.microphone_device = os.environ.get('HUDDLE_MICROPHONE_DEVICE', self.microphone_device)
        self.screen_device = os.environ.get('HUDDLE_SCREEN_DEVICE', self.screen_device)

        if self.rtc_config is None:
            self._build_rtc_config()

    def _build_rtc_config(self):
        """Build WebRTC configuration from the ICE settings."""
        ice_servers = []
        if self.stun_url:
            ice_servers.append(RTCIceServer(urls=self.stun_url))

        if self.turn_url:
            ice_servers.append(
                RTCIceServer(
                    urls=self.turn_url,
                    username=self.turn_username,
                    credential=self.turn_password
                )
            )

        self.rtc_config = RTCConfiguration(iceServers=ice_servers)

    def get_player_options(self) -> dict:
        """Options handed to MediaPlayer for video capture devices."""
        return {'video_size': self.video_size, 'framerate': self.framerate}

    def __str__(self) -> str:
        return (
            f"ClientConfig(signaling_url={self.signaling_url}, "
            f"negotiation_timeout={self.negotiation_timeout}, retries={self.negotiation_retries})"
        )
