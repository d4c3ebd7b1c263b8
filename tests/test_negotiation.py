import asyncio
import errno

import pytest
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack

from callengine.errors import CommandRejected
from callengine.media.tracks import CameraVideo, ControllableTrack, LocalStream, NoVideo, TrackKind
from callengine.rtc.negotiation import LocalMedia, TrackNegotiator
from callengine.rtc.peer_link import PeerLink
from callengine.rtc.signaling import SignalingHandler

from fakes import CAMERA, FakePeerConnection, RecordingOutbox, make_acquirer


def make_media(*, with_camera: bool = True) -> LocalMedia:
    audio = ControllableTrack(AudioStreamTrack(), source_kind=TrackKind.AUDIO, label="microphone")
    tracks = [audio]
    camera = None
    if with_camera:
        camera = ControllableTrack(VideoStreamTrack(), source_kind=TrackKind.VIDEO, label="camera")
        tracks.append(camera)
    return LocalMedia(stream=LocalStream(tracks=tracks), video=CameraVideo(camera) if camera else NoVideo())


def make_link(remote_id: str = "bob", **options):
    link = PeerLink(FakePeerConnection(remote_id, **options), remote_id=remote_id)
    outbox = RecordingOutbox(auto_answer=True)
    handler = SignalingHandler(link, outbox, is_caller=True)
    outbox.handler = handler
    return link, handler, outbox


def make_negotiator(media: LocalMedia, *, group: bool = False, links: int = 1, acquirer=None, **options):
    if acquirer is None:
        acquirer, _players = make_acquirer()
    pairs = [make_link(f"peer{index}", **options) for index in range(links)]
    notices = []
    negotiator = TrackNegotiator(
        media,
        acquirer,
        lambda: [(link, handler) for link, handler, _outbox in pairs],
        group=group,
        notice=lambda level, code, message: notices.append((level, code)),
    )
    for link, _handler, _outbox in pairs:
        negotiator.attach(link)
    return negotiator, pairs, notices


def test_attach_adds_audio_and_camera_senders() -> None:
    async def scenario():
        media = make_media()
        _negotiator, pairs, _notices = make_negotiator(media)
        return media, pairs[0][0]

    media, link = asyncio.run(scenario())
    assert set(link.senders) == {"audio", "video"}
    assert link.senders["video"].track is media.camera_track()
    assert link.local_stream is media.stream


def test_enable_then_disable_video_renegotiates_once() -> None:
    async def scenario():
        media = make_media(with_camera=False)
        negotiator, pairs, _notices = make_negotiator(media)
        link, _handler, outbox = pairs[0]
        first = await negotiator.enable_video()
        await negotiator.disable_video()
        second = await negotiator.enable_video()
        return first, second, negotiator, media, link, outbox

    first, second, negotiator, media, link, outbox = asyncio.run(scenario())
    assert first is True
    assert second is False
    assert negotiator.renegotiations == 1
    assert len(outbox.offers) == 1
    assert link.answered_epoch == 1
    assert media.video_enabled is True
    assert link.senders["video"].track is media.camera_track()


def test_disable_during_camera_acquisition_wins() -> None:
    async def scenario():
        media = make_media(with_camera=False)
        negotiator, pairs, _notices = make_negotiator(media)
        added, _ = await asyncio.gather(negotiator.enable_video(), negotiator.disable_video())
        return added, negotiator, media, pairs[0][0]

    added, negotiator, media, link = asyncio.run(scenario())
    assert added is True
    assert media.video_enabled is False
    assert negotiator.renegotiations == 1
    assert link.senders["video"].track is media.camera_track()
    assert media.camera_track().enabled is False


def test_disable_video_keeps_sender() -> None:
    async def scenario():
        media = make_media()
        negotiator, pairs, _notices = make_negotiator(media)
        link, _handler, outbox = pairs[0]
        sender = link.senders["video"]
        await negotiator.disable_video()
        return media, link, sender, outbox, negotiator

    media, link, sender, outbox, negotiator = asyncio.run(scenario())
    assert media.video_enabled is False
    assert link.senders["video"] is sender
    assert sender.track.enabled is False
    assert outbox.offers == []
    assert negotiator.renegotiations == 0


def test_screen_share_restores_camera_on_same_sender() -> None:
    async def scenario():
        media = make_media()
        negotiator, pairs, _notices = make_negotiator(media)
        link, _handler, outbox = pairs[0]
        camera = media.camera_track()
        sender = link.senders["video"]
        started = await negotiator.start_screen_share()
        screen = media.video.track
        during = (sender.track is screen, media.screen_sharing)
        await negotiator.stop_screen_share()
        return started, during, camera, screen, sender, link, media, outbox, negotiator

    started, during, camera, screen, sender, link, media, outbox, negotiator = asyncio.run(scenario())
    assert started is True
    assert during == (True, True)
    assert link.senders["video"] is sender
    assert sender.track is camera
    assert sender.history == [camera, screen, camera]
    assert media.screen_sharing is False
    assert media.video_enabled is True
    assert screen.is_live is False
    assert outbox.offers == []
    assert negotiator.renegotiations == 0


def test_camera_stays_off_after_screen_share_when_it_was_off() -> None:
    async def scenario():
        media = make_media()
        negotiator, pairs, _notices = make_negotiator(media)
        await negotiator.disable_video()
        await negotiator.start_screen_share()
        await negotiator.stop_screen_share()
        return media, pairs[0][0]

    media, link = asyncio.run(scenario())
    assert media.video_enabled is False
    assert isinstance(media.video, CameraVideo)
    assert link.senders["video"].track is media.camera_track()


def test_screen_share_stop_without_camera_reports_unavailable() -> None:
    async def scenario():
        acquirer, players = make_acquirer()
        media = make_media()
        negotiator, pairs, notices = make_negotiator(media, acquirer=acquirer)
        await negotiator.start_screen_share()
        media.camera_track().source.stop()
        players.fail(CAMERA, *[OSError(errno.EBUSY, "busy")] * 3)
        await negotiator.stop_screen_share()
        return media, pairs[0][0], notices

    media, link, notices = asyncio.run(scenario())
    assert isinstance(media.video, NoVideo)
    assert link.senders["video"].track is None
    assert ("warning", "camera-unavailable") in notices


def test_enable_video_rejected_while_screen_sharing() -> None:
    async def scenario():
        media = make_media()
        negotiator, _pairs, _notices = make_negotiator(media)
        await negotiator.start_screen_share()
        await negotiator.enable_video()

    with pytest.raises(CommandRejected):
        asyncio.run(scenario())


def test_cancelled_picker_leaves_media_untouched() -> None:
    async def scenario():
        acquirer, _players = make_acquirer(cancel_display=True)
        media = make_media()
        negotiator, _pairs, _notices = make_negotiator(media, acquirer=acquirer)
        started = await negotiator.start_screen_share()
        return started, media

    started, media = asyncio.run(scenario())
    assert started is False
    assert isinstance(media.video, CameraVideo)


def test_group_screen_share_uses_its_own_sender() -> None:
    async def scenario():
        media = make_media()
        negotiator, pairs, _notices = make_negotiator(media, group=True, links=2)
        video_senders = [link.senders["video"] for link, _handler, _outbox in pairs]
        await negotiator.start_screen_share()
        added = [("screen" in link.senders) for link, _handler, _outbox in pairs]
        refs = pairs[0][0].track_refs()
        screen_stream_id = media.screen_stream.id
        await negotiator.stop_screen_share()
        return negotiator, pairs, video_senders, added, media, refs, screen_stream_id

    negotiator, pairs, video_senders, added, media, refs, screen_stream_id = asyncio.run(scenario())
    assert added == [True, True]
    assert [(ref.kind, ref.sender_index) for ref in refs] == [
        (TrackKind.AUDIO, 0),
        (TrackKind.VIDEO, 1),
        (TrackKind.SCREEN, 2),
    ]
    assert [ref.stream_id for ref in refs] == [media.stream.id, media.stream.id, screen_stream_id]
    assert negotiator.renegotiations == 2
    for (link, _handler, outbox), video_sender in zip(pairs, video_senders):
        assert link.senders["video"] is video_sender
        assert link.senders["screen"].track is None
        assert len(outbox.offers) == 1
    assert isinstance(media.video, CameraVideo)


def test_group_renegotiation_failure_is_isolated() -> None:
    async def scenario():
        media = make_media()
        good, good_handler, good_outbox = make_link("good")
        bad, bad_handler, _bad_outbox = make_link("bad", fail_offer=True)
        notices = []
        acquirer, _players = make_acquirer()
        negotiator = TrackNegotiator(
            media,
            acquirer,
            lambda: [(good, good_handler), (bad, bad_handler)],
            group=True,
            notice=lambda level, code, message: notices.append(code),
        )
        negotiator.attach(good)
        negotiator.attach(bad)
        started = await negotiator.start_screen_share()
        return started, notices, good, good_outbox, media

    started, notices, good, good_outbox, media = asyncio.run(scenario())
    assert started is True
    assert notices == ["renegotiation-failed"]
    assert len(good_outbox.offers) == 1
    assert good.answered_epoch == 1
    assert media.screen_sharing is True


def test_toggle_mute() -> None:
    media = make_media()
    negotiator = TrackNegotiator(media, make_acquirer()[0], lambda: [])

    assert negotiator.toggle_mute() is True
    assert media.muted is True
    assert negotiator.describe_tracks() == {"audio": False, "video": True, "screen": False}
    assert negotiator.toggle_mute() is False
    assert media.audio_track().enabled is True

    silent = TrackNegotiator(LocalMedia(), make_acquirer()[0], lambda: [])
    with pytest.raises(CommandRejected):
        silent.toggle_mute()
