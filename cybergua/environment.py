"""Synthetic environment field feeding the factor engine and the factor gate."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from cybergua.bits import clamp01, clamp_int, fp8, js_round, mix_seed, round4
from cybergua.rng import XorShift32
from cybergua.trace import Phase, TraceLedger

ENV_SALT = 0x6A09E667


@dataclass(frozen=True)
class PseudoEnv:
    lat: float
    lon: float
    alt: int
    tz: int
    temp: float
    pressure: float
    humidity: float
    salinity: float
    mag: float
    radiation: float
    solar: float
    lunar: float
    tide: float
    grav: float


def derive_pseudo_env(seed: int, time_seed: int, entropy: int, when: datetime) -> PseudoEnv:
    r = XorShift32(mix_seed(seed, time_seed, entropy ^ ENV_SALT))
    lat = (mix_seed(seed, 180000, time_seed) % 180000) / 1000 - 90 + (r() - 0.5) * 0.18
    lon = (mix_seed(seed, 360000, entropy) % 360000) / 1000 - 180 + (r() - 0.5) * 0.22
    tz = clamp_int(js_round(lon / 15), -12, 14)
    alt = js_round((mix_seed(seed, time_seed, 913) % 120000) / 10 - 800 + (r() - 0.5) * 120)

    seasonal = math.sin((when.month - 1) / 12 * math.pi * 2)
    solar = clamp01(0.45 + 0.35 * seasonal + 0.12 * (r() - 0.5))
    lunar = clamp01(0.5 + 0.4 * math.sin((when.day % 29) / 29 * math.pi * 2) + 0.08 * (r() - 0.5))
    tide = clamp01(0.5 * solar + 0.5 * lunar + 0.08 * (r() - 0.5))

    temp = 18 - abs(lat) / 90 * 32 + seasonal * 10 + (r() - 0.5) * 4.2
    pressure = 101.325 * math.exp(-max(0, alt) / 8500) + (r() - 0.5) * 1.8
    humidity = clamp01(0.62 - abs(lat) / 120 + (r() - 0.5) * 0.18)
    salinity = clamp01(0.48 + (r() - 0.5) * 0.22 + abs(lon) / 180 * 0.08)

    mag = 25 + (1 - abs(lat) / 90) * 35 + (r() - 0.5) * 4
    radiation = clamp01(0.22 + solar * 0.42 + (r() - 0.5) * 0.12)
    grav = 9.78 + 0.05 * math.cos(lat / 180 * math.pi) - max(0, alt) * 0.000003 + (r() - 0.5) * 0.002

    return PseudoEnv(
        lat=lat, lon=lon, alt=alt, tz=tz,
        temp=temp, pressure=pressure, humidity=humidity, salinity=salinity,
        mag=mag, radiation=radiation, solar=solar, lunar=lunar, tide=tide, grav=grav,
    )


def emit_environment(ledger: TraceLedger, env: PseudoEnv) -> None:
    ledger.group_start(Phase.OMEN, "多学科环境场", {"model": "SYNTH", "v": 2})
    ledger.emit(Phase.OMEN, "坐标投影",
                {"lat": round4(env.lat), "lon": round4(env.lon), "alt": env.alt, "tz": env.tz},
                fp8([env.lat, env.lon, env.alt, env.tz, env.mag, env.temp, env.pressure, env.radiation]))
    ledger.emit(Phase.OMEN, "大气/海洋/地磁",
                {"temp": round4(env.temp), "pressure": round4(env.pressure), "humidity": round4(env.humidity),
                 "salinity": round4(env.salinity), "mag": round4(env.mag)},
                fp8([env.pressure, env.temp, env.humidity, env.salinity, env.mag, env.lat, env.lon, env.alt]))
    ledger.emit(Phase.OMEN, "天文背景辐照",
                {"radiation": round4(env.radiation), "solar": round4(env.solar),
                 "lunar": round4(env.lunar), "tide": round4(env.tide)},
                fp8([env.radiation, env.solar, env.lunar, env.tide, env.lat, env.lon, env.tz, env.mag]))
    ledger.group_end(Phase.OMEN, "环境场封装", {"h": ledger.head})
