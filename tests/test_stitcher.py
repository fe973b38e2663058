import hashlib
from urllib.parse import parse_qs

import httpx
import pytest

from avatar_worker.config import CloudinarySettings
from avatar_worker.pipeline.errors import StitchError
from avatar_worker.stitcher import CloudinaryStitcher, sign_params


@pytest.fixture
def cloud():
    return CloudinarySettings(cloud_name="demo", api_key="cloud-key", api_secret="cloud-secret")


def test_sign_params_sorts_keys():
    expected = hashlib.sha1(b"public_id=abc&timestamp=1700000000shh").hexdigest()
    assert sign_params({"timestamp": "1700000000", "public_id": "abc"}, "shh") == expected


class TestSpliceUrl:
    def test_without_trim(self, cloud):
        url = CloudinaryStitcher(cloud, httpx.Client()).splice_url(["a", "b", "c"])
        assert url == (
            "https://res.cloudinary.com/demo/video/upload/"
            "fl_splice,l_video:b/fl_layer_apply/fl_splice,l_video:c/fl_layer_apply/a.mp4"
        )

    def test_with_trim_and_folder(self, cloud):
        url = CloudinaryStitcher(cloud, httpx.Client()).splice_url(["a", "videos/b"], trim_seconds=1.5)
        assert "fl_splice,l_video:videos:b,so_1.5/fl_layer_apply" in url


class TestConcatenate:
    def test_uploads_in_order(self, services, cloudinary_uploads):
        stitcher = services.orchestrator.stitch_trigger.stitcher

        url = stitcher.concatenate("gen-1", ["https://cdn/1.mp4", "https://cdn/2.mp4"], trim_seconds=1.0)

        assert [u["public_id"] for u in cloudinary_uploads] == ["video_gen-1_segment_0", "video_gen-1_segment_1"]
        first = cloudinary_uploads[0]
        assert first["api_key"] == "cloud-key"
        assert first["signature"] == sign_params(
            {"public_id": "video_gen-1_segment_0", "timestamp": first["timestamp"]}, "cloud-secret"
        )
        assert url.endswith("fl_splice,l_video:video_gen-1_segment_1,so_1/fl_layer_apply/video_gen-1_segment_0.mp4")

    @pytest.mark.parametrize("urls,trim,message", [
        (["https://cdn/1.mp4"], None, "at least 2 segments"),
        (["https://cdn/1.mp4", ""], None, "needs a video URL"),
        (["https://cdn/1.mp4", "https://cdn/2.mp4"], 6.0, "Trim must be between"),
    ])
    def test_rejects_bad_input(self, services, cloudinary_uploads, urls, trim, message):
        stitcher = services.orchestrator.stitch_trigger.stitcher
        with pytest.raises(StitchError, match=message):
            stitcher.concatenate("gen-1", urls, trim)
        assert cloudinary_uploads == []

    def test_requires_credentials(self):
        stitcher = CloudinaryStitcher(CloudinarySettings(cloud_name="", api_key="", api_secret=""), httpx.Client())
        with pytest.raises(StitchError, match="not configured"):
            stitcher.concatenate("gen-1", ["https://cdn/1.mp4", "https://cdn/2.mp4"])

    def test_upload_failure(self, cloud):
        seen = []

        def handler(request):
            seen.append(parse_qs(request.content.decode())["public_id"][0])
            return httpx.Response(400, json={"error": {"message": "Resource not found"}})

        stitcher = CloudinaryStitcher(cloud, httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(StitchError, match="upload failed for video_gen-1_segment_0"):
            stitcher.concatenate("gen-1", ["https://cdn/1.mp4", "https://cdn/2.mp4"])
        assert seen == ["video_gen-1_segment_0"]
