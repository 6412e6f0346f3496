"""
威胁检测调度框架 - Threat Detection Scheduler

支持多摄像头轮询的威胁检测系统
- 火灾/烟雾检测 (Fire / Smoke)
- 武器检测 (Weapon)
- 盗窃动作检测 (Theft)

核心优势：
1. 按采样窗口动态计算每路摄像头的检测间隔，摄像头越多间隔越短
2. 每次检测抽取多帧，通过IoU运动分析过滤海报/屏幕等静态误报
3. 深度/闪烁活体校验，确认真实威胁后才报警
"""

__version__ = '1.0.0'
__author__ = 'Threat Detection Team'
