"""CLI entry point for rosfox."""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import websockets

from rosfox import __version__
from rosfox.codecs import RosfoxError
from rosfox.config import Config


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="rosfox",
        description="Talk to a Foxglove WebSocket server with ROS bridge verbs",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Override configuration directory",
    )
    parser.add_argument("--url", default=None, help="Override server URL")
    parser.add_argument(
        "--ros1",
        action="store_true",
        help="Use ROS 1 serialization instead of CDR",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for a response (default: from config)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    # ── init ──────────────────────────────────────────────────────────
    init_p = sub.add_parser("init", help="Write a configuration file")
    init_p.add_argument(
        "--server",
        default="ws://localhost:8765",
        help="Server URL (default: ws://localhost:8765)",
    )
    init_p.add_argument(
        "--call-timeout",
        type=float,
        default=None,
        help="Default service/parameter timeout in seconds",
    )

    # ── introspection ─────────────────────────────────────────────────
    topics_p = sub.add_parser("topics", help="List advertised topics")
    topics_p.add_argument(
        "--wait", type=float, default=1.0,
        help="Seconds to collect advertisements (default: 1.0)",
    )
    sub.add_parser("services", help="List advertised services")
    type_p = sub.add_parser("type", help="Show the message type of a topic")
    type_p.add_argument("topic")
    type_p.add_argument("--wait", type=float, default=1.0)

    # ── topics ────────────────────────────────────────────────────────
    echo_p = sub.add_parser("echo", help="Print messages from a topic")
    echo_p.add_argument("topic")
    echo_p.add_argument(
        "-n", "--count", type=int, default=0,
        help="Exit after this many messages (default: run forever)",
    )

    pub_p = sub.add_parser("pub", help="Publish one message")
    pub_p.add_argument("topic")
    pub_p.add_argument("type", help="Message type, e.g. std_msgs/msg/String")
    pub_p.add_argument("message", help="Message as JSON")

    # ── services & parameters ─────────────────────────────────────────
    call_p = sub.add_parser("call", help="Call a service")
    call_p.add_argument("service")
    call_p.add_argument("type", help="Service type, e.g. std_srvs/srv/SetBool")
    call_p.add_argument("args", nargs="?", default="{}", help="Request as JSON")

    param_p = sub.add_parser("param", help="Get or set a parameter")
    param_sub = param_p.add_subparsers(dest="param_command", required=True)
    get_p = param_sub.add_parser("get", help="Get a parameter (node:name)")
    get_p.add_argument("name")
    set_p = param_sub.add_parser("set", help="Set a parameter (node:name)")
    set_p.add_argument("name")
    set_p.add_argument("value", help="Value as JSON")

    args = parser.parse_args(argv)
    config_dir = Config.config_dir(args.config_dir)

    if args.command == "init":
        _cmd_init(args, config_dir)
        return

    config = Config.load(config_dir)
    if args.url:
        config.connection.url = args.url
    if args.ros1:
        config.session.ros2 = False
    if args.timeout is not None:
        config.session.call_timeout = args.timeout

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    commands = {
        "topics": _cmd_topics,
        "services": _cmd_services,
        "type": _cmd_type,
        "echo": _cmd_echo,
        "pub": _cmd_pub,
        "call": _cmd_call,
        "param": _cmd_param,
    }
    try:
        asyncio.run(_run(commands[args.command], args, config))
    except KeyboardInterrupt:
        print("\nDisconnected.")
    except asyncio.TimeoutError:
        print("Timed out waiting for a response.", file=sys.stderr)
        sys.exit(1)
    except RosfoxError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except (OSError, websockets.InvalidURI, websockets.InvalidHandshake) as e:
        print(f"Connection error: {e}", file=sys.stderr)
        sys.exit(1)


async def _run(command, args: argparse.Namespace, config: Config) -> None:
    from rosfox.ros import Ros

    ros = Ros(
        ros2=config.session.ros2,
        call_timeout=config.session.call_timeout,
        **config.connection.client_options(),
    )
    await ros.connect(config.connection.url)
    try:
        await command(ros, args, config)
    finally:
        await ros.close()


def _print(value: Any) -> None:
    print(json.dumps(value, indent=2, default=_json_default))


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return list(value)
    return str(value)


# ── Command implementations ──────────────────────────────────────────────


def _cmd_init(args: argparse.Namespace, config_dir: Path) -> None:
    config = Config.load(config_dir)
    config.connection.url = args.server
    config.session.ros2 = not args.ros1
    config.session.call_timeout = args.call_timeout
    config_file = config.save(config_dir)
    print(f"Configuration saved to: {config_file}")


async def _cmd_topics(ros, args: argparse.Namespace, config: Config) -> None:
    await asyncio.sleep(args.wait)
    result = await ros.call_service("/rosapi/topics", "rosapi/Topics", timeout=config.session.call_timeout)
    values = result.get("values", {})
    for topic, type_ in zip(values.get("topics", []), values.get("types", [])):
        print(f"{topic}  [{type_}]")


async def _cmd_services(ros, args: argparse.Namespace, config: Config) -> None:
    result = await ros.call_service("/rosapi/services", "rosapi/Services", timeout=config.session.call_timeout)
    for name in result.get("values", {}).get("services", []):
        print(name)


async def _cmd_type(ros, args: argparse.Namespace, config: Config) -> None:
    await asyncio.sleep(args.wait)
    result = await ros.call_service(
        "/rosapi/topic_type", "rosapi/TopicType", {"topic": args.topic},
        timeout=config.session.call_timeout,
    )
    if not result.get("result"):
        print(f"Unknown topic: {args.topic}", file=sys.stderr)
        sys.exit(1)
    print(result["values"]["type"])


async def _cmd_echo(ros, args: argparse.Namespace, config: Config) -> None:
    done = asyncio.Event()
    received = 0

    def _on_message(msg: Any) -> None:
        nonlocal received
        _print(msg)
        print("---")
        received += 1
        if args.count and received >= args.count:
            done.set()

    def _stop_on_failure(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            done.set()

    ros.on(args.topic, _on_message)
    ros.on("close", lambda *_: done.set())
    task = ros.send({"op": "subscribe", "topic": args.topic})
    if task is not None:
        task.add_done_callback(_stop_on_failure)
    await done.wait()
    if task is not None and task.done() and not task.cancelled() and task.exception():
        raise task.exception()


async def _cmd_pub(ros, args: argparse.Namespace, config: Config) -> None:
    ros.send({"op": "advertise", "topic": args.topic, "type": args.type})
    ros.send({"op": "publish", "topic": args.topic, "msg": json.loads(args.message)})
    publisher = ros.socket.publishers[args.topic]
    # Queued until the server advertises the topic back
    await asyncio.wait_for(asyncio.shield(publisher.task), config.session.call_timeout)


async def _cmd_call(ros, args: argparse.Namespace, config: Config) -> None:
    result = await ros.call_service(
        args.service, args.type, json.loads(args.args),
        timeout=config.session.call_timeout,
    )
    _print(result)
    if not result.get("result"):
        sys.exit(1)


async def _cmd_param(ros, args: argparse.Namespace, config: Config) -> None:
    if args.param_command == "get":
        result = await ros.call_service(
            "/rosapi/get_param", "rosapi/GetParam", {"name": args.name},
            timeout=config.session.call_timeout,
        )
        if result.get("result"):
            print(result["values"]["value"])
            return
    else:
        result = await ros.call_service(
            "/rosapi/set_param", "rosapi/SetParam",
            {"name": args.name, "value": args.value},
            timeout=config.session.call_timeout,
        )
        if result.get("result"):
            print("ok")
            return
    print(f"Parameter request failed: {result.get('values')}", file=sys.stderr)
    sys.exit(1)


if __name__ == "__main__":
    main()
