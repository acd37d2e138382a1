from __future__ import annotations

from layerhop.common.types import Continent, SignalSource

MAX_HOP_RETRIES = 3
HOP_TIMEOUT_SECONDS = 120.0
SETTLE_SECONDS = 1.0
RETRY_DELAY_SECONDS = 3.0
SEARCH_TIMEOUT_SECONDS = 20.0
REMINDER_DELAY_SECONDS = 5.0
REQUEST_COOLDOWN_SECONDS = 3.0
SIGNAL_STALE_SECONDS = 10.0

CROSS_CONTINENT_TTL = 300.0
RECENT_HOP_TTL = 60.0
DECLINED_TTL = 30.0
DECLINE_WHISPER_COOLDOWN = 120.0
HOP_BROADCAST_WINDOW = 60.0
WHISPER_MEMORY_SECONDS = 30.0

LEAVE_RETRY_SECONDS = 2.0
LEAVE_GRACE_SECONDS = 10.0
LEAVE_SLOW_SECONDS = 30.0

TOAST_DURATION_SECONDS = 8
THANKS_WHISPER = "Hopped! Smoother than a Paladin bubble-hearth. Cheers!"
DECLINE_WHISPER = "I'm in {location} - layers don't cross the Dark Portal! Thanks anyway."

# Higher wins when two sources report at the same instant.
SOURCE_PRIORITY = {
    SignalSource.SELF_WHISPER: 3,
    SignalSource.PEER_REPORT: 2,
    SignalSource.PROXIMITY: 1,
}

CONTINENT_LABELS = {
    Continent.AZEROTH: "Azeroth",
    Continent.OUTLAND: "Outland",
    Continent.UNKNOWN: "an unknown continent",
}

CONTINENT_NAMES = {
    "azeroth": Continent.AZEROTH,
    "kalimdor": Continent.AZEROTH,
    "eastern kingdoms": Continent.AZEROTH,
    "outland": Continent.OUTLAND,
    "outlands": Continent.OUTLAND,
}

# Instance map ids as reported by the client position API.
INSTANCE_CONTINENTS = {
    0: Continent.AZEROTH,  # Eastern Kingdoms
    1: Continent.AZEROTH,  # Kalimdor
    530: Continent.OUTLAND,
}

# Classic UI map ids. Blood elf and draenei starting zones live on map 530
# and draw from the Outland layer pool.
ZONE_CONTINENTS = {
    1414: Continent.AZEROTH,  # Kalimdor
    1415: Continent.AZEROTH,  # Eastern Kingdoms
    1411: Continent.AZEROTH,  # Durotar
    1412: Continent.AZEROTH,  # Mulgore
    1413: Continent.AZEROTH,  # The Barrens
    1416: Continent.AZEROTH,  # Alterac Mountains
    1417: Continent.AZEROTH,  # Arathi Highlands
    1418: Continent.AZEROTH,  # Badlands
    1419: Continent.AZEROTH,  # Blasted Lands
    1420: Continent.AZEROTH,  # Tirisfal Glades
    1421: Continent.AZEROTH,  # Silverpine Forest
    1422: Continent.AZEROTH,  # Western Plaguelands
    1423: Continent.AZEROTH,  # Eastern Plaguelands
    1424: Continent.AZEROTH,  # Hillsbrad Foothills
    1425: Continent.AZEROTH,  # The Hinterlands
    1426: Continent.AZEROTH,  # Dun Morogh
    1427: Continent.AZEROTH,  # Searing Gorge
    1428: Continent.AZEROTH,  # Burning Steppes
    1429: Continent.AZEROTH,  # Elwynn Forest
    1430: Continent.AZEROTH,  # Deadwind Pass
    1431: Continent.AZEROTH,  # Duskwood
    1432: Continent.AZEROTH,  # Loch Modan
    1433: Continent.AZEROTH,  # Redridge Mountains
    1434: Continent.AZEROTH,  # Stranglethorn Vale
    1435: Continent.AZEROTH,  # Swamp of Sorrows
    1436: Continent.AZEROTH,  # Westfall
    1437: Continent.AZEROTH,  # Wetlands
    1438: Continent.AZEROTH,  # Teldrassil
    1439: Continent.AZEROTH,  # Darkshore
    1440: Continent.AZEROTH,  # Ashenvale
    1441: Continent.AZEROTH,  # Thousand Needles
    1442: Continent.AZEROTH,  # Stonetalon Mountains
    1443: Continent.AZEROTH,  # Desolace
    1444: Continent.AZEROTH,  # Feralas
    1445: Continent.AZEROTH,  # Dustwallow Marsh
    1446: Continent.AZEROTH,  # Tanaris
    1447: Continent.AZEROTH,  # Azshara
    1448: Continent.AZEROTH,  # Felwood
    1449: Continent.AZEROTH,  # Un'Goro Crater
    1450: Continent.AZEROTH,  # Moonglade
    1451: Continent.AZEROTH,  # Silithus
    1452: Continent.AZEROTH,  # Winterspring
    1453: Continent.AZEROTH,  # Stormwind City
    1454: Continent.AZEROTH,  # Orgrimmar
    1455: Continent.AZEROTH,  # Ironforge
    1456: Continent.AZEROTH,  # Thunder Bluff
    1457: Continent.AZEROTH,  # Darnassus
    1458: Continent.AZEROTH,  # Undercity
    1941: Continent.OUTLAND,  # Eversong Woods
    1942: Continent.OUTLAND,  # Ghostlands
    1943: Continent.OUTLAND,  # Azuremyst Isle
    1944: Continent.OUTLAND,  # Hellfire Peninsula
    1945: Continent.OUTLAND,  # Outland
    1946: Continent.OUTLAND,  # Zangarmarsh
    1947: Continent.OUTLAND,  # The Exodar
    1948: Continent.OUTLAND,  # Shadowmoon Valley
    1949: Continent.OUTLAND,  # Blade's Edge Mountains
    1950: Continent.OUTLAND,  # Bloodmyst Isle
    1951: Continent.OUTLAND,  # Nagrand
    1952: Continent.OUTLAND,  # Terokkar Forest
    1953: Continent.OUTLAND,  # Netherstorm
    1954: Continent.OUTLAND,  # Silvermoon City
    1955: Continent.OUTLAND,  # Shattrath City
}

# GUID unit types that carry a layer-bearing zone uid.
PROXIMITY_UNIT_TYPES = frozenset({"Creature", "Vehicle"})
