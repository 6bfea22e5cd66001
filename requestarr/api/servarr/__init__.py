from requestarr.api.servarr.base import ServarrBase
from requestarr.api.servarr.radarr import RadarrAPI, RadarrMovieOptions
from requestarr.api.servarr.sonarr import SonarrAPI, SonarrSeriesOptions

__all__ = [
    "ServarrBase",
    "RadarrAPI",
    "RadarrMovieOptions",
    "SonarrAPI",
    "SonarrSeriesOptions",
]
