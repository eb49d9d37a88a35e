"""ICE candidate 변환 유틸리티"""

import logging

from aiortc import RTCIceCandidate
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

logger = logging.getLogger(__name__)

_CANDIDATE_PREFIX = "candidate:"


class ICECandidateParser:
    """브라우저 RTCIceCandidateInit 딕셔너리 <-> aiortc RTCIceCandidate 변환"""

    @staticmethod
    def parse(candidate_dict: dict | None) -> RTCIceCandidate | None:
        """브라우저 ICE candidate를 aiortc RTCIceCandidate로 파싱

        Args:
            candidate_dict: {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}

        Returns:
            RTCIceCandidate 또는 None (end-of-candidates 또는 형식 오류)
        """
        if not candidate_dict:
            return None

        if not isinstance(candidate_dict, dict):
            logger.warning(f"Ignoring non-object candidate: {type(candidate_dict).__name__}")
            return None

        candidate_str = candidate_dict.get("candidate") or ""
        if not isinstance(candidate_str, str):
            logger.warning(f"Ignoring candidate with non-string value: {type(candidate_str).__name__}")
            return None
        # 빈 문자열은 end-of-candidates
        if not candidate_str:
            return None

        sdp_mid = candidate_dict.get("sdpMid")
        sdp_mline_index = candidate_dict.get("sdpMLineIndex")
        if sdp_mid is not None and not isinstance(sdp_mid, str):
            logger.warning(f"Ignoring candidate with invalid sdpMid: {sdp_mid!r}")
            return None
        if sdp_mline_index is not None and (
            isinstance(sdp_mline_index, bool) or not isinstance(sdp_mline_index, int)
        ):
            logger.warning(f"Ignoring candidate with invalid sdpMLineIndex: {sdp_mline_index!r}")
            return None

        # "candidate:" 접두사 제거
        if candidate_str.startswith(_CANDIDATE_PREFIX):
            candidate_str = candidate_str[len(_CANDIDATE_PREFIX):]

        # 기본 필드: foundation component protocol priority ip port typ type
        if len(candidate_str.split()) < 8:
            logger.warning(f"Invalid candidate format: {candidate_str[:50]}")
            return None

        try:
            candidate = candidate_from_sdp(candidate_str)
        except (ValueError, IndexError) as e:
            logger.warning(f"Failed to parse candidate: {e}")
            return None

        candidate.sdpMid = sdp_mid
        candidate.sdpMLineIndex = sdp_mline_index
        return candidate

    @staticmethod
    def serialize(candidate: RTCIceCandidate) -> dict:
        """aiortc RTCIceCandidate를 브라우저 형식 딕셔너리로 변환"""
        return {
            "candidate": _CANDIDATE_PREFIX + candidate_to_sdp(candidate),
            "sdpMid": candidate.sdpMid,
            "sdpMLineIndex": candidate.sdpMLineIndex,
        }
