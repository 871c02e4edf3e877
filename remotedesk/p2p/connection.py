"""WebRTC control channel between two desktops.

The relay only introduces peers. Once both sides have exchanged session
descriptions through it, control frames flow over a direct aiortc data
channel and the relay connection can be dropped.
"""
from __future__ import annotations

import asyncio
import logging
import warnings
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Sequence

from aiortc import RTCConfiguration
from aiortc import RTCDataChannel
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from cryptography.utils import CryptographyDeprecationWarning

from remotedesk.p2p.exceptions import PeerConnectionTimeoutError
from remotedesk.p2p.exceptions import PeerNegotiationError
from remotedesk.relay.client import RelayClient
from remotedesk.relay.messages import IceCandidateMessage
from remotedesk.relay.messages import SignalMessage

warnings.simplefilter('ignore', CryptographyDeprecationWarning)

logger = logging.getLogger(__name__)

CONTROL_CHANNEL_LABEL = 'control'
DEFAULT_ICE_SERVERS = (
    'stun:stun.l.google.com:19302',
    'stun:stun1.l.google.com:19302',
)


def description_to_payload(
    description: RTCSessionDescription,
) -> dict[str, str]:
    """Convert a session description to the relay `signal` payload."""
    return {'type': description.type, 'sdp': description.sdp}


def payload_to_description(payload: Any) -> RTCSessionDescription:
    """Convert a relay `signal` payload to a session description.

    Raises:
        PeerNegotiationError: If the payload is not an offer or answer.
    """
    if (
        not isinstance(payload, dict)
        or payload.get('type') not in ('offer', 'answer')
        or not isinstance(payload.get('sdp'), str)
    ):
        raise PeerNegotiationError(
            'Signal payload does not contain either an offer or an answer.',
        )
    return RTCSessionDescription(sdp=payload['sdp'], type=payload['type'])


class PeerConnection:
    """Direct aiortc connection to a remote desktop.

    Negotiation runs over the relay: offers and answers are sent as
    `signal` messages addressed to the remote peer ID, and the
    resulting [aiortc](https://aiortc.readthedocs.io/en/latest/) data
    channel carries control frames in both directions.

    The offerer (the host whose screen is shared, which learned about the
    viewer from a `peer-joined` message) creates a single ordered and
    reliable data channel. Input events and file chunks share that channel
    and are therefore delivered in the order they were sent.

    Note:
        aiortc gathers every ICE candidate before the session description
        is sent, so this class never sends `ice-candidate` messages. Inbound
        candidates from trickling peers (e.g., browsers) are still applied.

    Example:
        ```python
        from remotedesk.p2p.connection import PeerConnection
        from remotedesk.relay.client import RelayClient

        host = RelayClient(address, user_id='HOST')
        viewer = RelayClient(address)
        await host.connect()
        await viewer.connect()

        host_side = PeerConnection(host, viewer.peer_id)
        viewer_side = PeerConnection(viewer, host.peer_id)

        await host_side.send_offer()
        await viewer_side.handle_server_message(await viewer.recv())
        await host_side.handle_server_message(await host.recv())

        await host_side.send('{"type": "hello"}')
        frame = await viewer_side.recv()
        ```

    Args:
        relay_client: Relay connection used for negotiation.
        peer_id: Peer ID of the remote desktop on the relay server.
        ice_servers: STUN/TURN server URLs used for ICE.
    """

    def __init__(
        self,
        relay_client: RelayClient,
        peer_id: str,
        *,
        ice_servers: Sequence[str] = DEFAULT_ICE_SERVERS,
    ) -> None:
        self._relay = relay_client
        self._peer_id = peer_id

        self._channel_ready = asyncio.Event()
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ice_servers],
        )
        self._pc = RTCPeerConnection(configuration)
        self._pc.on('datachannel', self._on_datachannel)

        self._frames: asyncio.Queue[bytes | str] = asyncio.Queue()
        self._channel: RTCDataChannel | None = None
        self._buffer_low = asyncio.Event()

    def __repr__(self) -> str:
        local = self._relay.peer_id or 'pending'
        return f'{type(self).__name__}({local[:8]} > {self._peer_id[:8]})'

    @property
    def peer_id(self) -> str:
        """Peer ID of the remote desktop."""
        return self._peer_id

    @property
    def state(self) -> str:
        """aiortc connection state.

        One of `'new'`, `'connecting'`, `'connected'`, `'failed'` or
        `'closed'`.
        """
        return self._pc.connectionState

    async def close(self) -> None:
        """Flush the control channel and close the peer connection.

        The relay client is left open.
        """
        logger.info(f'Closing {self!r}')
        if self._channel is not None:
            # aiortc drops queued frames on close unless flushed first
            # https://github.com/aiortc/aiortc/issues/547
            sctp = self._channel._RTCDataChannel__transport
            await sctp._data_channel_flush()
            await sctp._transmit()
            self._channel.close()
        await self._pc.close()

    def on_close_callback(
        self,
        callback: Callable[..., Awaitable[None]],
        *args: Any,
        **kwargs: Any,
    ) -> None:
        """Await `callback(*args, **kwargs)` once the connection ends.

        The callback runs when the connection state becomes `'closed'` or
        `'failed'`.
        """

        async def _on_state_change() -> None:
            if self.state not in ('closed', 'failed'):
                return
            logger.info(f'{self!r} is {self.state}')
            await callback(*args, **kwargs)

        self._pc.on('connectionstatechange', _on_state_change)

    async def send(self, message: bytes | str, timeout: float = 30) -> None:
        """Send a control frame, waiting while the send buffer is full.

        Raises:
            PeerConnectionTimeoutError: If the control channel does not
                open within `timeout` seconds.
        """
        await self.ready(timeout)
        assert self._channel is not None

        channel = self._channel
        if channel.bufferedAmount > channel.bufferedAmountLowThreshold:
            await self._buffer_low.wait()
            self._buffer_low.clear()
        channel.send(message)

    async def recv(self) -> bytes | str:
        """Wait for the next control frame from the peer."""
        return await self._frames.get()

    def _setup_channel(self, channel: RTCDataChannel) -> None:
        self._channel = channel
        channel.on('bufferedamountlow', self._buffer_low.set)
        channel.on('message', self._frames.put_nowait)

        async def _on_transport_state() -> None:
            if channel.readyState in ('closed', 'failed'):
                await self.close()

        # Data channels do not emit close events so watch the DTLS transport
        channel.transport.transport.on('statechange', _on_transport_state)

    def _on_datachannel(self, channel: RTCDataChannel) -> None:
        # Answerer side
        if channel.label != CONTROL_CHANNEL_LABEL:
            logger.warning(
                f'{self!r} ignoring unexpected data channel {channel.label}',
            )
            return
        self._setup_channel(channel)
        self._mark_ready()

    def _mark_ready(self) -> None:
        if not self._channel_ready.is_set():
            logger.info(f'{self!r} control channel open')
            self._channel_ready.set()

    async def send_offer(self) -> None:
        """Create the control channel and send an offer via the relay."""
        channel = self._pc.createDataChannel(
            CONTROL_CHANNEL_LABEL,
            ordered=True,
        )
        # Offerer side
        channel.on('open', self._mark_ready)
        self._setup_channel(channel)

        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        await self._send_local_description()

    async def send_answer(self) -> None:
        """Answer the remote offer via the relay."""
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        await self._send_local_description()

    async def _send_local_description(self) -> None:
        description = self._pc.localDescription
        logger.info(f'{self!r} sending {description.type}')
        await self._relay.signal(
            description_to_payload(description),
            to=self._peer_id,
        )

    async def handle_server_message(self, message: SignalMessage) -> None:
        """Handle a negotiation message forwarded by the relay server.

        Args:
            message: `signal` or `ice-candidate` message from the peer.

        Raises:
            PeerNegotiationError: If the message payload cannot be used.
        """
        if isinstance(message, IceCandidateMessage):
            await self._add_ice_candidate(message.payload)
            return

        description = payload_to_description(message.payload)
        logger.info(
            f'{self!r} received {description.type} from '
            f'{message.source}',
        )
        await self._pc.setRemoteDescription(description)
        if description.type == 'offer':
            await self.send_answer()

    async def _add_ice_candidate(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            raise PeerNegotiationError('ICE candidate payload is not a dict.')
        sdp = payload.get('candidate')
        if not sdp:
            # An empty candidate marks the end of candidates
            return
        if not isinstance(sdp, str):
            raise PeerNegotiationError('ICE candidate is not a string.')
        if sdp.startswith('candidate:'):
            sdp = sdp[len('candidate:') :]
        try:
            candidate = candidate_from_sdp(sdp)
        except (AssertionError, IndexError, ValueError) as e:
            raise PeerNegotiationError(
                f'Failed to parse ICE candidate {sdp!r}.',
            ) from e
        candidate.sdpMid = payload.get('sdpMid')
        candidate.sdpMLineIndex = payload.get('sdpMLineIndex')
        await self._pc.addIceCandidate(candidate)

    async def ready(self, timeout: float | None = None) -> None:
        """Wait until the control channel is open.

        Args:
            timeout: Seconds to wait or `None` to wait indefinitely.

        Raises:
            PeerConnectionTimeoutError: If the channel is not open within
                `timeout` seconds.
        """
        try:
            await asyncio.wait_for(self._channel_ready.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise PeerConnectionTimeoutError(
                f'Control channel of {self!r} did not open within '
                f'{timeout} seconds.',
            ) from e
