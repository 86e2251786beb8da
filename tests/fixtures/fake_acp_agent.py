"""Minimal ACP agent used by the bridge tests.

プロンプトのテキストで動作を切り替える:
    hello: テキストを1チャンク返して end_turn
    tool:  edit ツールのパーミッションを要求し、選ばれた outcome をテキストで返す
    tool-running: tool と同じだが、ツール呼び出しを実行中として開始する
    tool-twice: 同じツール呼び出しのパーミッションを2回要求し、outcome をカンマ区切りで返す
    exit:  応答せずに終了コード 3 で終了する
環境変数 FAKE_AGENT_INIT_ERROR が設定されていれば initialize をエラーで返す.
"""

import json
import os
import sys

SESSION_ID = "sess-1"


def send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def update(payload):
    send(
        {
            "jsonrpc": "2.0",
            "method": "session/update",
            "params": {"sessionId": SESSION_ID, "update": payload},
        }
    )


def chunk(text):
    update({"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": text}})


def wait_for_responses(request_ids):
    responses = {}
    while len(responses) < len(request_ids):
        line = sys.stdin.readline()
        if not line:
            sys.exit(0)
        message = json.loads(line)
        if message.get("id") in request_ids and "method" not in message:
            responses[message["id"]] = message
    return [responses[request_id] for request_id in request_ids]


def outcome_text(response):
    outcome = response.get("result", {}).get("outcome", {})
    if outcome.get("outcome") == "selected":
        return "selected:" + outcome.get("optionId", "")
    return outcome.get("outcome", "error")


def run_tool_turn(status="pending", requests=1):
    update(
        {
            "sessionUpdate": "tool_call",
            "toolCallId": "toolu_1",
            "kind": "edit",
            "title": "Edit a.py",
            "status": status,
            "rawInput": {"path": "a.py"},
        }
    )
    request_ids = [100 + n for n in range(requests)]
    for request_id in request_ids:
        send(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "method": "session/request_permission",
                "params": {
                    "sessionId": SESSION_ID,
                    "toolCall": {"toolCallId": "toolu_1", "title": "Edit a.py"},
                    "options": [
                        {"optionId": "allow-once", "name": "Allow", "kind": "allow_once"},
                        {"optionId": "allow-always", "name": "Always", "kind": "allow_always"},
                        {"optionId": "reject-once", "name": "Reject", "kind": "reject_once"},
                    ],
                },
            }
        )
    responses = wait_for_responses(request_ids)
    update({"sessionUpdate": "tool_call_update", "toolCallId": "toolu_1", "status": "completed"})
    chunk(",".join(outcome_text(response) for response in responses))


def main():
    sys.stdout.write("Fake agent ready\n")
    sys.stdout.flush()
    sys.stderr.write("debug: started\n")
    sys.stderr.flush()

    while True:
        line = sys.stdin.readline()
        if not line:
            return
        message = json.loads(line)
        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}

        if method == "initialize":
            if os.environ.get("FAKE_AGENT_INIT_ERROR"):
                send(
                    {
                        "jsonrpc": "2.0",
                        "id": request_id,
                        "error": {"code": -32000, "message": "Authentication required"},
                    }
                )
                continue
            send(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "result": {
                        "protocolVersion": params.get("protocolVersion", 1),
                        "agentCapabilities": {"loadSession": True},
                    },
                }
            )
        elif method == "session/new":
            send({"jsonrpc": "2.0", "id": request_id, "result": {"sessionId": SESSION_ID}})
        elif method == "session/load":
            send({"jsonrpc": "2.0", "id": request_id, "result": {}})
        elif method == "session/prompt":
            text = "".join(block.get("text", "") for block in params.get("prompt", []))
            if text == "exit":
                sys.exit(3)
            if text == "tool":
                run_tool_turn()
            elif text == "tool-running":
                run_tool_turn(status="in_progress")
            elif text == "tool-twice":
                run_tool_turn(requests=2)
            else:
                chunk("Hello!")
            send({"jsonrpc": "2.0", "id": request_id, "result": {"stopReason": "end_turn"}})
        elif request_id is not None:
            send(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {"code": -32601, "message": "Method not found"},
                }
            )


if __name__ == "__main__":
    main()
