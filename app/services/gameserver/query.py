"""Steam A2S queries, used for player count, player names and map of a running server."""
import asyncio
import struct
from dataclasses import dataclass
from typing import Callable, List, Optional, TypeVar

HEADER = b"\xff\xff\xff\xff"
A2S_INFO = HEADER + b"TSource Engine Query\x00"
A2S_PLAYER = HEADER + b"U"
S2A_INFO = 0x49
S2A_PLAYER = 0x44
S2C_CHALLENGE = 0x41
NO_CHALLENGE = HEADER

T = TypeVar("T")


@dataclass
class ServerInfo:
    name: str
    map: str
    folder: str
    game: str
    players: int
    max_players: int
    bots: int = 0
    version: Optional[str] = None


@dataclass
class PlayerInfo:
    name: str
    score: int = 0
    duration: float = 0.0


def _read_string(data: bytes, offset: int):
    end = data.index(b"\x00", offset)
    return data[offset:end].decode("utf-8", errors="replace"), end + 1


def parse_info(data: bytes) -> ServerInfo:
    if len(data) < 6 or data[:4] != HEADER or data[4] != S2A_INFO:
        raise ValueError("Not an A2S_INFO response")
    offset = 6  # header, type, protocol
    name, offset = _read_string(data, offset)
    map_name, offset = _read_string(data, offset)
    folder, offset = _read_string(data, offset)
    game, offset = _read_string(data, offset)
    offset += 2  # app id
    players, max_players, bots = data[offset], data[offset + 1], data[offset + 2]
    offset += 3 + 4  # server type, environment, visibility, vac
    version = None
    if offset < len(data):
        try:
            version, offset = _read_string(data, offset)
        except ValueError:
            version = None
    return ServerInfo(
        name=name, map=map_name, folder=folder, game=game,
        players=players, max_players=max_players, bots=bots, version=version,
    )


def parse_players(data: bytes) -> List[PlayerInfo]:
    """Players still connecting show up with an empty name and are skipped."""
    if len(data) < 6 or data[:4] != HEADER or data[4] != S2A_PLAYER:
        raise ValueError("Not an A2S_PLAYER response")
    count = data[5]
    offset = 6
    players = []
    for _ in range(count):
        offset += 1  # index, always 0 on Reforger
        name, offset = _read_string(data, offset)
        if offset + 8 > len(data):
            raise ValueError("Truncated A2S_PLAYER response")
        score, duration = struct.unpack_from("<lf", data, offset)
        offset += 8
        if name:
            players.append(PlayerInfo(name=name, score=score, duration=round(duration, 1)))
    return players


class _QueryProtocol(asyncio.DatagramProtocol):
    def __init__(self):
        self.transport = None
        self.responses: asyncio.Queue = asyncio.Queue()

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.responses.put_nowait(data)

    def error_received(self, exc):
        self.responses.put_nowait(exc)


async def _query(host: str, port: int, request: Callable[[bytes], bytes], parse: Callable[[bytes], T], timeout: float) -> T:
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(_QueryProtocol, remote_addr=(host, port))
    try:
        async def exchange(payload: bytes) -> bytes:
            transport.sendto(payload)
            response = await protocol.responses.get()
            if isinstance(response, Exception):
                raise response
            return response

        async def run() -> T:
            data = await exchange(request(b""))
            # Servers may answer with a challenge that must be echoed back
            if len(data) >= 9 and data[4] == S2C_CHALLENGE:
                data = await exchange(request(data[5:9]))
            return parse(data)

        return await asyncio.wait_for(run(), timeout=timeout)
    finally:
        transport.close()


async def query_info(host: str, port: int, timeout: float = 2.0) -> ServerInfo:
    """Queries one server. Raises ``asyncio.TimeoutError``/``OSError``/``ValueError`` on failure."""
    return await _query(host, port, lambda challenge: A2S_INFO + challenge, parse_info, timeout)


async def query_players(host: str, port: int, timeout: float = 2.0) -> List[PlayerInfo]:
    """Player names on one server. A2S_PLAYER always needs a challenge round trip."""
    return await _query(host, port, lambda challenge: A2S_PLAYER + (challenge or NO_CHALLENGE), parse_players, timeout)
