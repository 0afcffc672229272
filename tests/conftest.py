from pathlib import Path

import pytest

NETSTAT_LINUX = """\
Active Internet connections (servers and established)
Proto Recv-Q Send-Q Local Address           Foreign Address         State
tcp        0      0 0.0.0.0:8080            0.0.0.0:*               LISTEN
tcp        0      0 0.0.0.0:22              0.0.0.0:*               LISTEN
tcp6       0      0 :::9090                 :::*                    LISTEN
tcp        0      0 10.0.0.5:8080           10.0.0.9:51000          ESTABLISHED
tcp        0      0 10.0.0.5:8080           10.0.0.10:51001         ESTABLISHED
tcp        0      0 10.0.0.5:8080           10.0.0.9:51002          TIME_WAIT
tcp        0     36 10.0.0.5:40000          10.0.0.20:5432          ESTABLISHED
tcp        1      0 10.0.0.5:40001          127.0.0.1:6379          CLOSE_WAIT
tcp        0      0 10.0.0.5:40002          127.0.0.1:6379          ESTABLISHED
udp        0      0 0.0.0.0:68              0.0.0.0:*
Active UNIX domain sockets (servers and established)
unix  2      [ ACC ]     STREAM     LISTENING     17310    /run/systemd/private
"""

THREAD_DUMP = """\
12345
2025-09-04 22:48:28
21.0.4+7-LTS

#1 "main"
      java.base/java.lang.Thread.sleep0(Native Method)
      java.base/java.lang.Thread.sleep(Thread.java:509)
      com.example.App.main(App.java:12)

#21 "ForkJoinPool-1-worker-1"
      java.base/jdk.internal.vm.Continuation.run(Continuation.java:251)
      java.base/java.lang.VirtualThread.runContinuation(VirtualThread.java:245)
      java.base/java.util.concurrent.ForkJoinPool.runWorker(ForkJoinPool.java:1622)

#97407 "tomcat-handler-2093" virtual
      java.base/java.lang.VirtualThread.parkNanos(VirtualThread.java:631)
      com.example.Handler.handle(Handler.java:40)

#97408 "tomcat-handler-2094" virtual
      java.base/java.lang.VirtualThread.parkNanos(VirtualThread.java:631)
      com.example.Handler.handle(Handler.java:41)

#97500 "" virtual

#97501 "" virtual
"""


@pytest.fixture
def netstat_text():
    return NETSTAT_LINUX


@pytest.fixture
def thread_dump_text():
    return THREAD_DUMP


@pytest.fixture
def write_file(tmp_path):
    def write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return write
