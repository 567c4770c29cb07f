"""Geometry for 2D convolution and pooling kernels (NHWC layout)."""

import math
from typing import NamedTuple, Sequence, Tuple, Union

PadType = Union[str, int]


class PadInfo(NamedTuple):
    top: int
    bottom: int
    left: int
    right: int
    type: str


class Conv2DInfo(NamedTuple):
    batch_size: int
    in_height: int
    in_width: int
    in_channels: int
    out_height: int
    out_width: int
    out_channels: int
    stride_height: int
    stride_width: int
    dilation_height: int
    dilation_width: int
    filter_height: int
    filter_width: int
    pad_info: PadInfo
    in_shape: Tuple[int, int, int, int]
    out_shape: Tuple[int, int, int, int]
    filter_shape: Tuple[int, ...]

    @property
    def effective_filter_height(self) -> int:
        return (self.filter_height - 1) * self.dilation_height + 1

    @property
    def effective_filter_width(self) -> int:
        return (self.filter_width - 1) * self.dilation_width + 1


def _pair(value) -> Tuple[int, int]:
    if isinstance(value, (tuple, list)):
        return int(value[0]), int(value[1])
    return int(value), int(value)


def _get_pad_and_out_info(pad: PadType, in_height, in_width, stride_height, stride_width,
                          filter_height, filter_width) -> Tuple[PadInfo, int, int]:
    if isinstance(pad, int):
        out_height = (in_height - filter_height + 2 * pad) // stride_height + 1
        out_width = (in_width - filter_width + 2 * pad) // stride_width + 1
        return PadInfo(pad, pad, pad, pad, "number"), out_height, out_width
    if pad == "same":
        out_height = math.ceil(in_height / stride_height)
        out_width = math.ceil(in_width / stride_width)
        pad_along_height = max(0, (out_height - 1) * stride_height + filter_height - in_height)
        pad_along_width = max(0, (out_width - 1) * stride_width + filter_width - in_width)
        top = pad_along_height // 2
        left = pad_along_width // 2
        return (PadInfo(top, pad_along_height - top, left, pad_along_width - left, "same"),
                out_height, out_width)
    if pad == "valid":
        out_height = math.ceil((in_height - filter_height + 1) / stride_height)
        out_width = math.ceil((in_width - filter_width + 1) / stride_width)
        return PadInfo(0, 0, 0, 0, "valid"), out_height, out_width
    raise ValueError(f"Unknown padding parameter: {pad}")


def compute_conv2d_info(in_shape: Sequence[int], filter_shape: Sequence[int], strides, pad: PadType,
                        dilations=1, depthwise: bool = False) -> Conv2DInfo:
    """Output geometry of a conv2d.

    Args:
        in_shape: [batch, height, width, in_channels]
        filter_shape: [filter_height, filter_width, in_channels, out_channels]
            (or channel multiplier when depthwise)
        strides: int or (stride_height, stride_width)
        pad: 'same', 'valid' or an explicit symmetric pad amount
        dilations: int or (dilation_height, dilation_width)
        depthwise: treat the last filter dim as a channel multiplier
    """
    batch_size, in_height, in_width, in_channels = in_shape
    filter_height, filter_width, _, filter_channels = filter_shape
    stride_height, stride_width = _pair(strides)
    dilation_height, dilation_width = _pair(dilations)
    effective_height = (filter_height - 1) * dilation_height + 1
    effective_width = (filter_width - 1) * dilation_width + 1
    pad_info, out_height, out_width = _get_pad_and_out_info(
        pad, in_height, in_width, stride_height, stride_width, effective_height, effective_width)
    out_channels = filter_channels * in_channels if depthwise else filter_channels
    return Conv2DInfo(
        batch_size=batch_size, in_height=in_height, in_width=in_width, in_channels=in_channels,
        out_height=out_height, out_width=out_width, out_channels=out_channels,
        stride_height=stride_height, stride_width=stride_width,
        dilation_height=dilation_height, dilation_width=dilation_width,
        filter_height=filter_height, filter_width=filter_width, pad_info=pad_info,
        in_shape=tuple(in_shape), out_shape=(batch_size, out_height, out_width, out_channels),
        filter_shape=tuple(filter_shape),
    )


def compute_pool2d_info(in_shape: Sequence[int], filter_size, strides, pad: PadType) -> Conv2DInfo:
    """Output geometry of a pooling window; channels pass through unchanged."""
    filter_height, filter_width = _pair(filter_size)
    channels = in_shape[3]
    return compute_conv2d_info(in_shape, (filter_height, filter_width, channels, channels),
                               strides, pad, 1)


def strides_or_dilations_are_one(value) -> bool:
    return _pair(value) == (1, 1)
