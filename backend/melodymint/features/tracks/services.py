QUALIFYING_SECONDS = 30


def is_qualifying_playback(duration_listened: int, track_duration: int) -> bool:
    """A playback counts once 30 seconds or half the track were heard, whichever comes first."""
    if duration_listened <= 0:
        return False
    if duration_listened >= QUALIFYING_SECONDS:
        return True
    return track_duration > 0 and duration_listened * 2 >= track_duration
