"""
Room Roster

Local mirror of room occupancy, mutated only by server room data: full
client lists replace a room's roster, clientListDelta updates merge into it.
After every mutation, peers with call state that are no longer in any room
are handed to the departure handler, and an aggregated occupant notification
is scheduled for the room.
"""

import copy
from functools import partial
from typing import Callable, Dict, List, Optional
from pyee import EventEmitter
from ...tools.logger import log_info, log_debug, log_error
from ...tools.timers import AggregatingTimers

# Occupant record keys a clientListDelta update may change on a known peer
DELTA_FIELDS = ("apiField", "presence")

OCCUPANT_AGGREGATION_PERIOD = 0.1


class RoomRosterSynchronizer:
    """
    Events emitted on ``events``:
        room_occupants(room_name, occupants, my_info)
        room_entry(entered, room_name)
    """

    def __init__(self, table, events: EventEmitter, on_peer_departed: Callable):
        self.table = table
        self.events = events
        self.on_peer_departed = on_peer_departed
        self.own_id: Optional[str] = None
        # on_room_joined(room_name), called before a joined room's occupants are processed
        self.on_room_joined: Optional[Callable] = None

        self.rooms_joined: Dict[str, dict] = {}
        self.room_fields: Dict[str, dict] = {}
        self._rosters: Dict[str, Dict[str, dict]] = {}
        self._timers = AggregatingTimers(period=OCCUPANT_AGGREGATION_PERIOD)

    ## Server room data

    def apply_room_data(self, room_data: Optional[dict]):
        """Apply a roomData payload: room status, client list or delta, and room fields per room."""
        for room_name, data in (room_data or {}).items():
            if not isinstance(data, dict):
                log_debug(f"Ignoring malformed room data for {room_name}")
                continue

            status = data.get("roomStatus")
            if status == "join":
                self.rooms_joined.setdefault(room_name, {"roomName": room_name})
                if self.on_room_joined:
                    self.on_room_joined(room_name)
            elif status == "leave":
                self._leave(room_name)
                continue

            if data.get("clientList") is not None:
                self._replace(room_name, data["clientList"])
            elif data.get("clientListDelta") is not None:
                self._merge(room_name, data["clientListDelta"])

            if room_name in self.rooms_joined and data.get("field"):
                self.room_fields[room_name] = data["field"]

            if status == "join":
                log_info(f"Entered room {room_name}")
                self.events.emit("room_entry", True, room_name)

            self._process_occupant_list(room_name)

    def apply_snapshot(self, room_name: str, client_list: dict):
        """Replace a room's roster wholesale."""
        self._replace(room_name, client_list)
        self._process_occupant_list(room_name)

    def apply_delta(self, room_name: str, delta: dict):
        """Merge a {updateClient, removeClient} delta into a room's roster."""
        self._merge(room_name, delta)
        self._process_occupant_list(room_name)

    def _replace(self, room_name: str, client_list: dict):
        self._rosters[room_name] = {
            peer_id: dict(record) for peer_id, record in (client_list or {}).items()
        }

    def _merge(self, room_name: str, delta: dict):
        roster = self._rosters.setdefault(room_name, {})

        for peer_id, record in (delta.get("updateClient") or {}).items():
            if peer_id not in roster:
                roster[peer_id] = dict(record)
                continue
            for key in DELTA_FIELDS:
                if key in record:
                    roster[peer_id][key] = record[key]

        for peer_id in delta.get("removeClient") or {}:
            roster.pop(peer_id, None)

    def _leave(self, room_name: str):
        log_info(f"Left room {room_name}")
        self.events.emit("room_entry", False, room_name)
        self.rooms_joined.pop(room_name, None)
        self.room_fields.pop(room_name, None)
        self._rosters.pop(room_name, None)
        self.process_lost_peers({})

    ## Occupants

    def _split_own(self, room_name: str):
        my_info = None
        occupants = {}
        for peer_id, record in self._rosters.get(room_name, {}).items():
            if peer_id == self.own_id:
                my_info = record
            else:
                occupants[peer_id] = record
        return occupants, my_info

    def _process_occupant_list(self, room_name: str):
        occupants, _ = self._split_own(room_name)
        self.process_lost_peers(occupants)
        self._timers.add(
            f"roomOccupants&{room_name}",
            partial(self._notify_occupants, room_name),
        )

    def _notify_occupants(self, room_name: str):
        occupants, my_info = self._split_own(room_name)
        self.events.emit("room_occupants", room_name, copy.deepcopy(occupants), my_info)

    def process_lost_peers(self, peers_in_room: dict):
        """
        Hand every peer with call state that is in no room to the departure
        handler. Failures are isolated per peer.
        """
        candidates = self.table.tracked_peers() | set(self.table.queued_candidates)
        for peer_id in sorted(candidates):
            if peer_id in peers_in_room or self.is_peer_in_any_room(peer_id):
                continue
            try:
                self.on_peer_departed(peer_id)
            except Exception as e:
                log_error(f"Error cleaning up departed peer {peer_id}: {e}")

    ## Queries

    def is_peer_in_any_room(self, peer_id: str) -> bool:
        return any(peer_id in roster for roster in self._rosters.values())

    def get_room_occupants(self, room_name: str) -> Optional[Dict[str, dict]]:
        roster = self._rosters.get(room_name)
        return dict(roster) if roster is not None else None

    def get_room_occupants_as_list(self, room_name: str) -> Optional[List[str]]:
        roster = self._rosters.get(room_name)
        return list(roster) if roster is not None else None

    def get_room_api_field(self, room_name: str, peer_id: str, field_name: str):
        occupant = self._rosters.get(room_name, {}).get(peer_id) or {}
        entry = (occupant.get("apiField") or {}).get(field_name)
        return entry.get("fieldValue") if isinstance(entry, dict) else None

    def peer_api_field_values(self, peer_id: str, field_name: str) -> list:
        """The peer's value of an API field in every room that holds one."""
        values = []
        for room_name in self._rosters:
            value = self.get_room_api_field(room_name, peer_id, field_name)
            if value is not None:
                values.append(value)
        return values

    def get_room_fields(self, room_name: str) -> Optional[dict]:
        return self.room_fields.get(room_name)

    def get_rooms_joined(self) -> Dict[str, bool]:
        return {room_name: True for room_name in self.rooms_joined}

    def id_to_name(self, peer_id: str) -> str:
        """The peer's username, or the id itself when no room lists one."""
        for roster in self._rosters.values():
            username = (roster.get(peer_id) or {}).get("username")
            if username:
                return username
        return peer_id

    def username_to_ids(self, username: str, room_name: str = None) -> List[dict]:
        results = []
        for name, roster in self._rosters.items():
            if room_name and name != room_name:
                continue
            for peer_id, record in roster.items():
                if record.get("username") == username:
                    results.append({"peerId": peer_id, "roomName": name})
        return results

    def clear(self):
        """Forget every room, telling listeners each known room is now empty."""
        self._timers.cancel_all()
        for room_name in list(self._rosters):
            self.events.emit("room_occupants", room_name, {}, None)
        self._rosters.clear()
        self.rooms_joined.clear()
        self.room_fields.clear()
