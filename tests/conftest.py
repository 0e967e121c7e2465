"""
Shared fixtures.

FIXTURE_WAT is a small module built the way wasm-bindgen lays out its
exports: the key comes from ``localStorage.getItem("tmdb_session_id")``
through a catch-wrapped import, and the transform hex-decodes the
ciphertext, XORs it with the key bytes and hands the plaintext back as a
resolved promise.

``process_img_data_chained`` returns the same plaintext the long way round:
an executor-built promise, a ``then`` reaction running closure 982 through
``__wbindgen_export_5``, and a second promise the closure settles. The
closure drops itself while running, so its destructor (function table slot
36) records ``(a, b)`` at DTOR_RECORD.
"""

import pytest

from app.wasm.browser import FingerprintProfile
from app.wasm.host import load_module

# two i32 words the closure destructor writes: (a, b)
DTOR_RECORD = 2048

FIXTURE_WAT = r"""
(module
  (import "wbg" "__wbg_static_accessor_WINDOW_5de37043a91a9c40" (func $window (result i32)))
  (import "wbg" "__wbg_localStorage_1406c99c39728187" (func $local_storage (param i32) (result i32)))
  (import "wbg" "__wbg_getItem_17f98dee3b43fa7e" (func $get_item (param i32 i32 i32 i32)))
  (import "wbg" "__wbindgen_object_drop_ref" (func $drop (param i32)))
  (import "wbg" "__wbindgen_string_new" (func $string_new (param i32 i32) (result i32)))
  (import "wbg" "__wbg_resolve_4851785c9c5f573d" (func $resolve (param i32) (result i32)))
  (import "wbg" "__wbindgen_throw" (func $throw (param i32 i32)))
  (import "wbg" "__wbg_now_807e54c39636c349" (func $date_now (result f64)))
  (import "wbg" "__wbg_now_d18023d54d4e5500" (func $perf_now (param i32) (result f64)))
  (import "wbg" "__wbg_then_44b73946d2fb3e7d" (func $then (param i32 i32) (result i32)))
  (import "wbg" "__wbg_new_23a2665fac83c611" (func $promise_new (param i32 i32) (result i32)))
  (import "wbg" "__wbg_queueMicrotask_97d92b4fcc8a61c5" (func $queue_microtask (param i32)))
  (import "wbg" "__wbg_queueMicrotask_d3219def82552485" (func $queue_microtask_get (param i32) (result i32)))
  (import "wbg" "__wbindgen_closure_wrapper982" (func $closure (param i32 i32 i32) (result i32)))
  (import "wbg" "__wbindgen_cb_drop" (func $cb_drop (param i32) (result i32)))
  (import "wbg" "__wbg_call_7cccdd69e0791ae2" (func $call (param i32 i32 i32) (result i32)))

  (memory (export "memory") 2 16)
  (table (export "__wbindgen_export_3") 37 funcref)
  (elem (i32.const 36) $closure_dtor)

  (global $heap (mut i32) (i32.const 65536))
  (global $sp (mut i32) (i32.const 65536))
  (global $exn (mut i32) (i32.const 0))
  (global $pending (mut i32) (i32.const 0))
  (global $outer_resolve (mut i32) (i32.const 0))
  (global $callback (mut i32) (i32.const 0))

  (data (i32.const 1024) "tmdb_session_id")
  (data (i32.const 1040) "ciphertext has odd length")
  (data (i32.const 1072) "empty key")

  (func (export "__wbindgen_export_0") (param $handle i32)
    (global.set $exn (local.get $handle)))

  (func $malloc (export "__wbindgen_export_1") (param $size i32) (param $align i32) (result i32)
    (local $ptr i32)
    (local $end i32)
    (local.set $ptr (global.get $heap))
    (local.set $end (i32.add (local.get $ptr) (local.get $size)))
    (if (i32.gt_u (local.get $end) (i32.mul (memory.size) (i32.const 65536)))
      (then
        (if (i32.eq
              (memory.grow
                (i32.sub
                  (i32.shr_u (i32.add (local.get $end) (i32.const 65535)) (i32.const 16))
                  (memory.size)))
              (i32.const -1))
          (then (unreachable)))))
    (global.set $heap (local.get $end))
    (local.get $ptr))

  (func (export "__wbindgen_export_4") (param i32 i32 i32))

  (func $add_sp (export "__wbindgen_add_to_stack_pointer") (param $delta i32) (result i32)
    (global.set $sp (i32.add (global.get $sp) (local.get $delta)))
    (global.get $sp))

  (func $fail (param $ret i32)
    (i32.store (local.get $ret) (i32.const 0))
    (i32.store offset=4 (local.get $ret) (i32.const 0))
    (i32.store offset=8 (local.get $ret) (global.get $exn))
    (i32.store offset=12 (local.get $ret) (i32.const 1)))

  (func (export "get_img_key") (param $ret i32)
    (local $win i32)
    (local $storage i32)
    (local $tmp i32)
    (global.set $exn (i32.const 0))
    (local.set $win (call $window))
    (local.set $storage (call $local_storage (local.get $win)))
    (call $drop (local.get $win))
    (if (global.get $exn)
      (then (call $fail (local.get $ret)) (return)))
    (local.set $tmp (call $add_sp (i32.const -16)))
    (call $get_item (local.get $tmp) (local.get $storage) (i32.const 1024) (i32.const 15))
    (call $drop (local.get $storage))
    (if (global.get $exn)
      (then
        (call $fail (local.get $ret))
        (drop (call $add_sp (i32.const 16)))
        (return)))
    (i32.store (local.get $ret) (i32.load (local.get $tmp)))
    (i32.store offset=4 (local.get $ret) (i32.load offset=4 (local.get $tmp)))
    (i32.store offset=8 (local.get $ret) (i32.const 0))
    (i32.store offset=12 (local.get $ret) (i32.const 0))
    (drop (call $add_sp (i32.const 16))))

  (func $nibble (param $c i32) (result i32)
    (if (i32.and (i32.ge_u (local.get $c) (i32.const 48)) (i32.le_u (local.get $c) (i32.const 57)))
      (then (return (i32.sub (local.get $c) (i32.const 48)))))
    (if (i32.and (i32.ge_u (local.get $c) (i32.const 97)) (i32.le_u (local.get $c) (i32.const 102)))
      (then (return (i32.sub (local.get $c) (i32.const 87)))))
    (unreachable))

  (func $decrypt (param $p0 i32) (param $l0 i32) (param $p1 i32) (param $l1 i32) (result i32)
    (local $n i32)
    (local $out i32)
    (local $i i32)
    (local $byte i32)
    (if (i32.and (local.get $l0) (i32.const 1))
      (then (call $throw (i32.const 1040) (i32.const 25)) (unreachable)))
    (if (i32.eqz (local.get $l1))
      (then (call $throw (i32.const 1072) (i32.const 9)) (unreachable)))
    (local.set $n (i32.shr_u (local.get $l0) (i32.const 1)))
    (local.set $out (call $malloc (local.get $n) (i32.const 1)))
    (block $done
      (loop $next
        (br_if $done (i32.ge_u (local.get $i) (local.get $n)))
        (local.set $byte
          (i32.or
            (i32.shl
              (call $nibble (i32.load8_u (i32.add (local.get $p0) (i32.shl (local.get $i) (i32.const 1)))))
              (i32.const 4))
            (call $nibble
              (i32.load8_u (i32.add (local.get $p0) (i32.add (i32.shl (local.get $i) (i32.const 1)) (i32.const 1)))))))
        (i32.store8
          (i32.add (local.get $out) (local.get $i))
          (i32.xor
            (local.get $byte)
            (i32.load8_u (i32.add (local.get $p1) (i32.rem_u (local.get $i) (local.get $l1))))))
        (local.set $i (i32.add (local.get $i) (i32.const 1)))
        (br $next)))
    (call $string_new (local.get $out) (local.get $n)))

  (func (export "process_img_data") (param $p0 i32) (param $l0 i32) (param $p1 i32) (param $l1 i32) (result i32)
    (local $text i32)
    (local $promise i32)
    (local.set $text (call $decrypt (local.get $p0) (local.get $l0) (local.get $p1) (local.get $l1)))
    (local.set $promise (call $resolve (local.get $text)))
    (call $drop (local.get $text))
    (local.get $promise))

  (func (export "process_img_data_chained") (param $p0 i32) (param $l0 i32) (param $p1 i32) (param $l1 i32) (result i32)
    (local $inner i32)
    (local $outer i32)
    (global.set $pending (call $decrypt (local.get $p0) (local.get $l0) (local.get $p1) (local.get $l1)))
    (local.set $inner (call $promise_new (i32.const 1) (i32.const 0)))
    (local.set $outer (call $promise_new (i32.const 2) (i32.const 0)))
    (global.set $callback (call $closure (i32.const 7) (i32.const 9) (i32.const 0)))
    (call $drop (call $then (local.get $inner) (global.get $callback)))
    (call $drop (local.get $inner))
    (local.get $outer))

  ;; executor: a == 1 resolves with the pending plaintext, otherwise keeps resolve for the closure
  (func (export "__wbindgen_export_6") (param $a i32) (param $b i32) (param $resolve i32) (param $reject i32)
    (if (i32.eq (local.get $a) (i32.const 1))
      (then
        (call $drop (call $call (local.get $resolve) (i32.const 128) (global.get $pending)))
        (call $drop (global.get $pending))
        (call $drop (local.get $resolve)))
      (else
        (global.set $outer_resolve (local.get $resolve))))
    (call $drop (local.get $reject)))

  (func (export "__wbindgen_export_5") (param $a i32) (param $b i32) (param $arg i32)
    (drop (call $cb_drop (global.get $callback)))
    (call $drop (call $call (global.get $outer_resolve) (i32.const 128) (local.get $arg)))
    (call $drop (local.get $arg))
    (call $drop (global.get $outer_resolve)))

  (func $closure_dtor (param $a i32) (param $b i32)
    (i32.store (i32.const 2048) (local.get $a))
    (i32.store (i32.const 2052) (local.get $b)))
)
"""


def xor_encrypt(plaintext: str, key: str) -> str:
    """Inverse of the fixture transform: XOR with the key bytes, then lowercase hex."""
    data = plaintext.encode("utf-8")
    key_bytes = key.encode("utf-8")
    return bytes(b ^ key_bytes[i % len(key_bytes)] for i, b in enumerate(data)).hex()


@pytest.fixture
def fixture_module():
    return load_module(FIXTURE_WAT)


@pytest.fixture
def profile():
    return FingerprintProfile.create(session_id="0123456789abcdef0123456789abcdef", timezone_offset_minutes=0)
