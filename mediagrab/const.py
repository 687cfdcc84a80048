SUPPORTED_RESPONSE_HEADERS = [
    "accept-ranges",
    "content-type",
    "content-length",
    "content-range",
    "last-modified",
    "etag",
]

METADATA_TAGS = frozenset(
    {
        "album",
        "composer",
        "genre",
        "copyright",
        "title",
        "artist",
        "album_artist",
        "track",
        "date",
    }
)

MEDIA_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
    "gif": "image/gif",
    "jpg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
    "opus": "audio/ogg",
    "ogg": "audio/ogg",
    "wav": "audio/wav",
}
