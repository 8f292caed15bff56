"""过期预占回收 / 修复本地执行脚本"""

import argparse
import logging
from app.db.session import SessionLocal
from app.core.redis import redis_client
from app.jobs import sweeps

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def run_cleanup(batch_size: int = 100, dry_run: bool = False, repair: bool = False, use_cache: bool = True):
    """执行回收

    Args:
        batch_size: 批处理大小
        dry_run: 是否为试运行模式（只统计，不执行）
        repair: 是否同时执行孤儿预占修复和失效确认预占清理
        use_cache: 是否同步失效 Redis 库存缓存
    """
    db = SessionLocal()
    try:
        if dry_run:
            pending = sweeps.count_pending(db)
            logger.info(f"试运行模式：待回收 {pending}")
            return pending

        result = sweeps.run_sweep(
            db,
            redis_client if use_cache else None,
            batch_size=batch_size,
            include_coupons=True,
            repair=repair,
        )
        logger.info(f"回收完成：{result}")
        return result

    except Exception as e:
        logger.error(f"回收执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='过期预占回收与修复工具')
    parser.add_argument(
        '--batch-size',
        type=int,
        default=100,
        help='批处理大小 (默认: 100)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='试运行模式，只统计不执行回收'
    )
    parser.add_argument(
        '--repair',
        action='store_true',
        help='同时修复孤儿预占和失效的确认预占'
    )
    parser.add_argument(
        '--no-cache',
        action='store_true',
        help='不连接 Redis（本地无缓存时使用）'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='详细输出模式'
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        result = run_cleanup(args.batch_size, args.dry_run, args.repair, not args.no_cache)
        if args.dry_run:
            print(f"📊 试运行结果：{result}")
        else:
            print(f"✅ 回收完成：{result}")
    except Exception as e:
        print(f"❌ 执行失败: {str(e)}")
        return 1

    return 0

if __name__ == "__main__":
    exit(main())
