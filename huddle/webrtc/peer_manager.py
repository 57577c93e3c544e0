"""
WebRTC peer connection management for one joined room.

One PeerLink per remote participant, each with its own lock, so a stalled
negotiation with one peer never delays another. Glare is resolved by
connection id ordering: the side with the smaller id offers, the other
answers.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..core import protocol
from ..core.config import ClientConfig
from ..core.exceptions import InvalidTransitionError, NegotiationError
from ..core.logging import LoggerMixin, debug_log
from ..core.validation_utils import ValidationUtils
from .peer_link import LinkState, PeerLink

# Candidates kept per unknown participant before its PeerLink exists
MAX_EARLY_CANDIDATES = 64


class PeerConnectionManager(LoggerMixin):
    """Owns the PeerLinks of a room and drives their negotiation."""

    def __init__(self, connection_id: str, send_signal: Callable[[Dict[str, Any]], Awaitable[Any]],
                 config: Optional[ClientConfig] = None,
                 pc_factory: Optional[Callable[[], Any]] = None):
        super().__init__()
        self.connection_id = connection_id
        self.send_signal = send_signal
        self.config = config or ClientConfig()
        self.pc_factory = pc_factory or self._create_peer_connection

        self.room_id: Optional[str] = None
        self.links: Dict[str, PeerLink] = {}
        self.local_tracks: Dict[str, MediaStreamTrack] = {}
        self._early_candidates: Dict[str, List[dict]] = {}
        self._tasks: Set[asyncio.Task] = set()

        self.connection_callbacks: Dict[str, Set[Callable]] = {
            'remote_track': set(),
            'peer_connected': set(),
            'peer_closed': set(),
            'peer_failed': set(),
        }

    def _create_peer_connection(self) -> RTCPeerConnection:
        return RTCPeerConnection(configuration=self.config.rtc_config)

    def add_connection_callback(self, event: str, callback: Callable):
        """Add a callback for connection events."""
        if event in self.connection_callbacks:
            self.connection_callbacks[event].add(callback)

    def remove_connection_callback(self, event: str, callback: Callable):
        """Remove a callback for connection events."""
        if event in self.connection_callbacks:
            self.connection_callbacks[event].discard(callback)

    def is_designated_offerer(self, remote_connection_id: str) -> bool:
        return self.connection_id < remote_connection_id

    def join_room(self, room_id: str):
        self.room_id = room_id

    # Local media

    def set_local_tracks(self, tracks: Dict[str, MediaStreamTrack]):
        """Set the tracks attached to every PeerLink created from now on."""
        self.local_tracks = dict(tracks)
        if self.links:
            self.log_warning(f"Local tracks changed with active links; existing links keep their senders", {
                "links": list(self.links.keys())
            })

    def replace_outgoing_track(self, kind: str, track: Optional[MediaStreamTrack]) -> int:
        """Substitute the outgoing ``kind`` track on every PeerLink.

        Runs without awaiting, so no peer can observe a mix of old and new
        tracks once this returns. ``None`` mutes the sender. Returns the
        number of links updated.
        """
        if track is None:
            self.local_tracks.pop(kind, None)
        else:
            self.local_tracks[kind] = track
        replaced = 0
        for link in list(self.links.values()):
            sender = link.senders.get(kind)
            if sender is None:
                continue
            try:
                sender.replaceTrack(track)
                replaced += 1
            except Exception as e:
                self.log_error(f"Failed to replace outgoing track", {
                    "remote_connection_id": link.remote_connection_id,
                    "kind": kind,
                    "error": str(e),
                    "error_type": type(e).__name__
                })

        debug_log(f"🔁 [PeerManager] Outgoing {kind} track replaced", {
            "links_updated": replaced,
            "total_links": len(self.links)
        })
        return replaced

    # Discovery

    async def handle_roster(self, participants: Iterable[Dict[str, Any]]):
        """Seed links for the participants already in the room."""
        remote_ids = [p.get('connectionId') for p in participants if isinstance(p, dict)]
        await asyncio.gather(*(
            self.handle_participant_discovered(remote_id) for remote_id in remote_ids if remote_id
        ))

    async def handle_participant_discovered(self, remote_connection_id: str):
        if remote_connection_id == self.connection_id or not self._in_room("discovery", remote_connection_id):
            return
        if remote_connection_id in self.links:
            self.log_debug(f"Participant already known", {"remote_connection_id": remote_connection_id})
            return

        link = self._create_link(remote_connection_id)
        if self.is_designated_offerer(remote_connection_id):
            await self._send_offer(link)
        else:
            debug_log(f"⏳ [PeerManager] Waiting for offer from participant", {
                "remote_connection_id": remote_connection_id
            })

    # Inbound negotiation

    async def handle_offer(self, remote_connection_id: str, sdp: Dict[str, Any]):
        if not self._in_room("offer", remote_connection_id):
            return
        error = ValidationUtils.validate_session_description(sdp)
        if error or sdp.get('type') != 'offer':
            self.log_warning(f"Dropping malformed offer", {
                "remote_connection_id": remote_connection_id,
                "error": error or f"unexpected type {sdp.get('type')}"
            })
            return

        link = self.links.get(remote_connection_id)
        if link is not None:
            if link.offered and link.state is LinkState.NEGOTIATING and not link.remote_description_set:
                if self.is_designated_offerer(remote_connection_id):
                    debug_log(f"🤝 [PeerManager] Glare: ignoring offer, our offer stands", {
                        "remote_connection_id": remote_connection_id
                    })
                    return
                debug_log(f"🤝 [PeerManager] Glare: discarding our offer to answer", {
                    "remote_connection_id": remote_connection_id
                })
                self._requeue_remote_candidates(link)
                await self._close_link(link, notify=False)
                link = None
            elif link.state is not LinkState.IDLE:
                debug_log(f"🔄 [PeerManager] Remote restarted negotiation", {
                    "remote_connection_id": remote_connection_id,
                    "state": link.state.value
                })
                self._requeue_remote_candidates(link)
                await self._close_link(link, notify=False)
                link = None

        if link is None:
            if not self._in_room("offer", remote_connection_id):
                return
            link = self._create_link(remote_connection_id)

        async with link.lock:
            if link.is_closed:
                return
            try:
                link.transition(LinkState.NEGOTIATING)
                await link.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp['sdp'], type=sdp['type']))
                link.remote_description_set = True
                await self._apply_pending_remote_candidates(link)

                answer = await link.pc.createAnswer()
                await link.pc.setLocalDescription(answer)
                if link.is_closed:
                    return
                await self._send(protocol.ANSWER, remote_connection_id,
                                 sdp=self._description_to_dict(link.pc.localDescription))
                link.local_description_sent = True
                await self._flush_local_candidates(link)
                self._check_connected(link)
            except Exception as e:
                await self._fail_link(link, e)

    async def handle_answer(self, remote_connection_id: str, sdp: Dict[str, Any]):
        if not self._in_room("answer", remote_connection_id):
            return
        link = self.links.get(remote_connection_id)
        if link is None:
            self.log_warning(f"Dropping answer from unknown participant", {
                "remote_connection_id": remote_connection_id
            })
            return

        async with link.lock:
            try:
                link.expect_answer()
            except InvalidTransitionError as e:
                self.log_warning(f"Rejected answer", {
                    "remote_connection_id": remote_connection_id,
                    "error": str(e)
                })
                return

            try:
                error = ValidationUtils.validate_session_description(sdp)
                if error or sdp.get('type') != 'answer':
                    raise NegotiationError(error or f"Unexpected description type {sdp.get('type')}")
                await link.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp['sdp'], type=sdp['type']))
                link.remote_description_set = True
                await self._apply_pending_remote_candidates(link)
                self._check_connected(link)
            except Exception as e:
                await self._fail_link(link, e)

    async def handle_ice_candidate(self, remote_connection_id: str, candidate: Any):
        if not candidate or not self._in_room("ice-candidate", remote_connection_id):
            return

        link = self.links.get(remote_connection_id)
        if link is None:
            queue = self._early_candidates.setdefault(remote_connection_id, [])
            if len(queue) < MAX_EARLY_CANDIDATES:
                queue.append(candidate)
            return
        if link.is_closed:
            return
        if not link.remote_description_set:
            link.pending_remote_candidates.append(candidate)
            return

        async with link.lock:
            if not link.is_closed:
                await self._add_remote_candidate(link, candidate)

    async def handle_participant_left(self, remote_connection_id: str):
        self._early_candidates.pop(remote_connection_id, None)
        link = self.links.get(remote_connection_id)
        if link is None:
            return
        debug_log(f"🔌 [PeerManager] Participant left", {"remote_connection_id": remote_connection_id})
        await self._close_link(link)

    async def leave_room(self):
        """Close every PeerLink and stop local tracks. Safe to call repeatedly."""
        room_id, self.room_id = self.room_id, None
        links = list(self.links.values())
        if links or self.local_tracks:
            debug_log(f"👋 [PeerManager] Leaving room", {
                "room_id": room_id,
                "links": [link.remote_connection_id for link in links]
            })

        await asyncio.gather(*(self._close_link(link) for link in links))
        self.links.clear()
        self._early_candidates.clear()

        tracks = list(self.local_tracks.values())
        self.local_tracks.clear()
        for track in tracks:
            track.stop()

    # Link lifecycle

    def _in_room(self, action: str, remote_connection_id: str) -> bool:
        if self.room_id is None:
            self.log_debug(f"Ignoring {action} outside a room", {"remote_connection_id": remote_connection_id})
            return False
        return True

    def _requeue_remote_candidates(self, link: PeerLink):
        """Hand queued remote candidates to the link that replaces ``link``."""
        if not link.pending_remote_candidates:
            return
        queue = self._early_candidates.setdefault(link.remote_connection_id, [])
        queue.extend(link.pending_remote_candidates)
        del queue[MAX_EARLY_CANDIDATES:]
        link.pending_remote_candidates.clear()

    def _create_link(self, remote_connection_id: str) -> PeerLink:
        link = PeerLink(remote_connection_id, self.pc_factory())
        for kind, track in self.local_tracks.items():
            link.senders[kind] = link.pc.addTrack(track)
        link.pending_remote_candidates.extend(self._early_candidates.pop(remote_connection_id, []))

        self._setup_peer_connection_handlers(link)
        self.links[remote_connection_id] = link
        link.watchdog = asyncio.create_task(self._watch_negotiation(link))

        debug_log(f"🔗 [PeerManager] PeerLink created", {
            "remote_connection_id": remote_connection_id,
            "local_tracks": list(link.senders.keys()),
            "total_links": len(self.links)
        })
        return link

    def _setup_peer_connection_handlers(self, link: PeerLink):
        """Set up event handlers for a link's peer connection."""
        pc = link.pc
        remote_id = link.remote_connection_id

        @pc.on("track")
        def on_track(track):
            if not self._is_current(link):
                return
            link.remote_tracks[track.kind] = track
            debug_log(f"🎥 [PeerManager] Remote track received", {
                "remote_connection_id": remote_id,
                "kind": track.kind
            })
            self._notify_callbacks('remote_track', remote_id, track)

        @pc.on("icecandidate")
        def on_ice_candidate(candidate):
            if candidate is None or not self._is_current(link):
                return
            payload = self._candidate_to_dict(candidate)
            if link.local_description_sent:
                self._spawn(self._send(protocol.ICE_CANDIDATE, remote_id, candidate=payload))
            else:
                link.pending_local_candidates.append(payload)

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            debug_log(f"🔗 [PeerManager] Connection state changed", {
                "remote_connection_id": remote_id,
                "connection_state": pc.connectionState
            }, "DEBUG")
            if not self._is_current(link):
                return
            if pc.connectionState == "connected":
                self._check_connected(link)
            elif pc.connectionState == "failed":
                await self._fail_link(link, NegotiationError("Peer connection failed"))

    def _is_current(self, link: PeerLink) -> bool:
        return not link.is_closed and self.links.get(link.remote_connection_id) is link

    def _check_connected(self, link: PeerLink):
        if link.state is LinkState.NEGOTIATING and getattr(link.pc, 'connectionState', None) == "connected":
            link.transition(LinkState.CONNECTED)
            debug_log(f"✅ [PeerManager] Peer connected", {
                "remote_connection_id": link.remote_connection_id,
                "offered": link.offered
            })
            self._notify_callbacks('peer_connected', link.remote_connection_id, link)

    async def _send_offer(self, link: PeerLink):
        async with link.lock:
            if link.is_closed:
                return
            try:
                link.transition(LinkState.NEGOTIATING)
                link.offered = True
                offer = await link.pc.createOffer()
                await link.pc.setLocalDescription(offer)
                if link.is_closed:
                    return
                await self._send(protocol.OFFER, link.remote_connection_id,
                                 sdp=self._description_to_dict(link.pc.localDescription))
                link.local_description_sent = True
                await self._flush_local_candidates(link)
            except Exception as e:
                await self._fail_link(link, e)

    async def _close_link(self, link: PeerLink, notify: bool = True):
        """Release a link's peer connection and remote media."""
        if link.is_closed:
            return
        link.transition(LinkState.CLOSED)
        remote_id = link.remote_connection_id
        if self.links.get(remote_id) is link:
            del self.links[remote_id]

        if link.watchdog is not None and link.watchdog is not asyncio.current_task():
            link.watchdog.cancel()

        for track in link.remote_tracks.values():
            track.stop()
        link.remote_tracks.clear()
        link.pending_local_candidates.clear()
        link.pending_remote_candidates.clear()

        try:
            await link.pc.close()
        except Exception as e:
            self.log_warning(f"Error closing peer connection", {
                "remote_connection_id": remote_id,
                "error": str(e)
            })

        debug_log(f"🧹 [PeerManager] PeerLink closed", {
            "remote_connection_id": remote_id,
            "total_links": len(self.links)
        })
        if notify:
            self._notify_callbacks('peer_closed', remote_id, link)

    async def _fail_link(self, link: PeerLink, error: Exception):
        """Close one link after a negotiation failure, leaving the others untouched."""
        if link.is_closed:
            return
        self.log_error(f"Negotiation failed", {
            "remote_connection_id": link.remote_connection_id,
            "state": link.state.value,
            "error": str(error),
            "error_type": type(error).__name__
        })
        await self._close_link(link)
        self._notify_callbacks('peer_failed', link.remote_connection_id, error)

    async def _watch_negotiation(self, link: PeerLink):
        """Retry or give up on a link that does not connect in time."""
        while True:
            try:
                await asyncio.wait_for(link.settled.wait(), self.config.negotiation_timeout)
                return
            except asyncio.TimeoutError:
                pass

            if not self._is_current(link) or link.state is LinkState.CONNECTED:
                return

            link.attempts += 1
            if link.attempts > self.config.negotiation_retries:
                await self._fail_link(link, NegotiationError(
                    "Negotiation timed out", {"attempts": link.attempts}
                ))
                return

            if link.remote_description_set and not link.offered:
                # Answering side: the offerer retries
                continue

            await self._restart_link(link)
            return

    async def _restart_link(self, link: PeerLink):
        remote_id = link.remote_connection_id
        debug_log(f"🔄 [PeerManager] Restarting negotiation", {
            "remote_connection_id": remote_id,
            "attempt": link.attempts
        }, "WARNING")
        self._requeue_remote_candidates(link)
        await self._close_link(link, notify=False)
        if self.room_id is None or remote_id in self.links:
            return
        new_link = self._create_link(remote_id)
        new_link.attempts = link.attempts
        await self._send_offer(new_link)

    # Candidates

    async def _apply_pending_remote_candidates(self, link: PeerLink):
        while link.pending_remote_candidates:
            await self._add_remote_candidate(link, link.pending_remote_candidates.pop(0))

    async def _add_remote_candidate(self, link: PeerLink, candidate: Any):
        try:
            ice_candidate = self._parse_candidate(candidate)
            if ice_candidate is not None:
                await link.pc.addIceCandidate(ice_candidate)
        except Exception as e:
            self.log_warning(f"Dropping unusable ICE candidate", {
                "remote_connection_id": link.remote_connection_id,
                "error": str(e),
                "error_type": type(e).__name__
            })

    async def _flush_local_candidates(self, link: PeerLink):
        while link.pending_local_candidates:
            candidate = link.pending_local_candidates.pop(0)
            await self._send(protocol.ICE_CANDIDATE, link.remote_connection_id, candidate=candidate)

    @staticmethod
    def _parse_candidate(candidate: Any):
        """Build an aiortc candidate from the browser's ``{candidate, sdpMid, sdpMLineIndex}`` form."""
        if isinstance(candidate, dict):
            text = candidate.get('candidate')
            sdp_mid = candidate.get('sdpMid')
            sdp_mline_index = candidate.get('sdpMLineIndex')
        else:
            text, sdp_mid, sdp_mline_index = candidate, None, None

        if not text:
            # End-of-candidates marker
            return None
        if text.startswith('candidate:'):
            text = text[len('candidate:'):]

        ice_candidate = candidate_from_sdp(text)
        ice_candidate.sdpMid = sdp_mid
        ice_candidate.sdpMLineIndex = sdp_mline_index
        return ice_candidate

    @staticmethod
    def _candidate_to_dict(candidate: Any) -> Dict[str, Any]:
        if isinstance(candidate, dict):
            return candidate
        return {
            'candidate': f"candidate:{candidate_to_sdp(candidate)}",
            'sdpMid': candidate.sdpMid,
            'sdpMLineIndex': candidate.sdpMLineIndex,
        }

    @staticmethod
    def _description_to_dict(description: Any) -> Dict[str, str]:
        return {'type': description.type, 'sdp': description.sdp}

    # Plumbing

    async def _send(self, action: str, target_connection_id: str, **fields):
        await self.send_signal(protocol.build_message(
            action,
            roomId=self.room_id,
            targetConnectionId=target_connection_id,
            **fields
        ))

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _notify_callbacks(self, event: str, remote_connection_id: str, data: Any = None):
        """Notify all callbacks for an event."""
        for callback in list(self.connection_callbacks.get(event, ())):
            try:
                result = callback(remote_connection_id, data)
                if asyncio.iscoroutine(result):
                    self._spawn(result)
            except Exception as e:
                self.log_error(f"Error in connection callback", {
                    "event": event,
                    "remote_connection_id": remote_connection_id,
                    "error": str(e)
                })

    def get_remote_tracks(self, remote_connection_id: str) -> Dict[str, MediaStreamTrack]:
        link = self.links.get(remote_connection_id)
        return dict(link.remote_tracks) if link else {}

    def get_link_count(self) -> int:
        return len(self.links)

    def get_status(self) -> Dict[str, Any]:
        return {
            'connection_id': self.connection_id,
            'room_id': self.room_id,
            'local_tracks': sorted(self.local_tracks),
            'links': [link.to_dict() for link in self.links.values()],
        }
