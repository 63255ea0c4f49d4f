import logging
import threading

import numpy as np
from laser_odometry.output import OdometryOutput, OutputChannel


def make_record(stamp):
    return OdometryOutput(stamp=stamp, pose=np.eye(4), velocity=np.zeros(6),
                          undistorted_cloud=np.zeros((0, 4)))


def test_channel_delivers_records():
    received = []
    done = threading.Event()

    def consume(record):
        received.append(record.stamp)
        done.set()

    with OutputChannel(consume) as channel:
        channel.publish(make_record(1.0))
        assert done.wait(timeout=5.0)
    assert received == [1.0]

def test_channel_overwrites_pending_record(caplog):
    """A slow consumer only sees the newest record; the producer is never blocked."""
    received = []
    release = threading.Event()
    started = threading.Event()

    def consume(record):
        received.append(record.stamp)
        started.set()
        release.wait(timeout=5.0)

    channel = OutputChannel(consume)
    with caplog.at_level(logging.WARNING, logger="laser_odometry.output"):
        channel.publish(make_record(1.0))
        assert started.wait(timeout=5.0)
        channel.publish(make_record(2.0))
        channel.publish(make_record(3.0))
    release.set()
    channel.close()
    assert received == [1.0, 3.0]
    assert "Overwriting previous output" in caplog.text

def test_consumer_exceptions_are_contained(caplog):
    calls = []

    def consume(record):
        calls.append(record.stamp)
        if record.stamp == 1.0:
            raise RuntimeError("boom")

    with caplog.at_level(logging.ERROR, logger="laser_odometry.output"):
        channel = OutputChannel(consume)
        channel.publish(make_record(1.0))
        channel.close()
    assert calls == [1.0]
    assert "Output function raised" in caplog.text
    assert not channel._thread.is_alive()

def test_close_is_prompt_without_records():
    channel = OutputChannel(lambda record: None)
    channel.close()
    assert not channel._thread.is_alive()
